"""Oracle driver — runs one command at a time against the ledger and the model.

Each step moves through ``Idle -> Executing -> Settled``:

1. refresh ``state.now`` from the latest block;
2. evaluate the precondition (the rejection reasons);
3. execute the command on the ledger;
4. on an error, let the classifier decide whether it was expected and
   charge the fee of the failed transaction; on success, refuse an
   unexpected acceptance, apply the transition, verify the post-call
   state and check the invariants.

Without a ledger the driver runs in model-only mode and applies the
precondition and transition alone.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Sequence

from crowdsale_oracle.core.config import Settings
from crowdsale_oracle.core.errors import (
    CommandFailure,
    ConfigurationError,
    InvariantViolation,
    PostconditionMismatch,
    UnexpectedSuccess,
    UnresolvedBranch,
    UnresolvedBranchError,
)
from crowdsale_oracle.core.types import RejectionKind
from crowdsale_oracle.fuzzer.catalog import CatalogEntry, find_command
from crowdsale_oracle.fuzzer.classifier import ExceptionClassifier
from crowdsale_oracle.fuzzer.commands import KYC_REJECTED, Command
from crowdsale_oracle.fuzzer.executors import ExecutionContext
from crowdsale_oracle.fuzzer.state import ReferenceState, adjust_eth
from crowdsale_oracle.ledger.accounts import TOKEN, AccountBook
from crowdsale_oracle.ledger.interface import BlockInfo, ChainClock, LedgerClient

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    state: ReferenceState
    accepted: bool
    reasons: list[str] = field(default_factory=list)
    rejection: RejectionKind | None = None


@dataclass
class RunStats:
    """Counters over one executed sequence."""
    executed: int = 0
    accepted: int = 0
    rejected: int = 0
    accepted_by_kind: Counter = field(default_factory=Counter)
    rejected_by_kind: Counter = field(default_factory=Counter)

    def record(self, command: Command, outcome: StepOutcome) -> None:
        self.executed += 1
        if outcome.accepted:
            self.accepted += 1
            self.accepted_by_kind[command.kind.value] += 1
        else:
            self.rejected += 1
            self.rejected_by_kind[command.kind.value] += 1

    def merge(self, other: "RunStats") -> None:
        self.executed += other.executed
        self.accepted += other.accepted
        self.rejected += other.rejected
        self.accepted_by_kind.update(other.accepted_by_kind)
        self.rejected_by_kind.update(other.rejected_by_kind)


class OracleDriver:
    """Checks a ledger against the reference model, command by command."""

    def __init__(
        self,
        ledger: LedgerClient | None,
        chain: ChainClock | None,
        settings: Settings,
        accounts: AccountBook | None = None,
        classifier: ExceptionClassifier | None = None,
    ) -> None:
        if (ledger is None) != (chain is None):
            raise ConfigurationError("ledger and chain must be given together")
        self.ledger = ledger
        self.chain = chain
        self.settings = settings
        self.accounts = accounts
        self.classifier = classifier or ExceptionClassifier()

    @property
    def model_only(self) -> bool:
        return self.ledger is None

    # ── Setup ────────────────────────────────────────────────────────

    async def setup(self) -> ReferenceState:
        """Build the initial Reference State from the ledger."""
        if self.ledger is None or self.chain is None:
            raise ConfigurationError("a ledger is required to read the initial state")
        ledger = self.ledger

        addresses = (await self.chain.accounts())[: self.settings.account_count]
        if len(addresses) < 2:
            raise ConfigurationError(f"need at least 2 unlocked accounts, node has {len(addresses)}")
        self.accounts = AccountBook(addresses, await ledger.token_contract())
        book = self.accounts

        owner = book.index_of(await ledger.owner())
        wallet = book.index_of(await ledger.wallet())
        if not isinstance(owner, int):
            raise ConfigurationError("crowdsale owner is not one of the node accounts")
        if not isinstance(wallet, int):
            raise ConfigurationError("crowdsale wallet is not one of the node accounts")
        token_owner = book.index_of(await ledger.token_owner())
        token = book.index_of(await ledger.token())

        total_supply = await ledger.total_supply()
        block = await self.chain.latest_block()
        state = ReferenceState(
            owner=owner,
            wallet=wallet,
            crowdsale=await ledger.sale_parameters(),
            token_owner=token_owner if isinstance(token_owner, int) else None,
            token=token if token is not None else TOKEN,
            crowdsale_paused=await ledger.crowdsale_paused(),
            token_paused=await ledger.token_paused(),
            crowdsale_finalized=await ledger.is_finalized(),
            wei_raised=await ledger.wei_raised(),
            tokens_sold=await ledger.tokens_sold(),
            crowdsale_supply=total_supply,
            token_supply=total_supply,
            now=block.timestamp,
        )
        for index in book.indexes:
            address = book.address(index)
            tokens = await ledger.token_balance(address)
            if tokens:
                state.token_balances[index] = tokens
            deposited = await ledger.vault_deposited(address)
            if deposited:
                state.vault[index] = deposited
            state.eth_balances[index] = await ledger.eth_balance(address)

        if state.wei_raised or state.vault:
            logger.warning("Crowdsale already holds funds; cumulative investments start at zero in the model")
        logger.info(
            "Initial state: owner=%s wallet=%s accounts=%d window=[%d, %d]",
            owner, wallet, len(book), state.crowdsale.start_time, state.crowdsale.end_time,
        )
        return state

    # ── Stepping ─────────────────────────────────────────────────────

    async def step(self, state: ReferenceState, command: Command, step: int | None = None) -> StepOutcome:
        entry = find_command(command)
        log_extra = {"command": command.kind.value, "step": step}

        block_before: BlockInfo | None = None
        if self.chain is not None:
            block_before = await self.chain.latest_block()
            state = state.at(block_before.timestamp)

        reasons = entry.precondition(state, command)
        should_reject = bool(reasons)

        if self.model_only:
            if should_reject:
                logger.debug("Rejected %r: %s", command, "; ".join(reasons), extra={**log_extra, "outcome": "rejected"})
                return StepOutcome(state, accepted=False, reasons=reasons)
            new = self._transition(entry, state, command)
            self._check_invariants(state, new, command)
            logger.debug("Accepted %r", command, extra={**log_extra, "outcome": "accepted"})
            return StepOutcome(new, accepted=True)

        ctx = ExecutionContext(self.ledger, self.chain, self.accounts, self.settings)
        started = time.monotonic()
        try:
            result = await entry.execute(command, state, ctx)
        except Exception as error:
            kind = self.classifier.adjudicate(error, should_reject, command.involves_zero(), state, command)
            state = await self._charge_failed(state, command, block_before)
            logger.debug(
                "Rejected %r (%s): %s", command, kind.value, "; ".join(reasons),
                extra={**log_extra, "outcome": "rejected"},
            )
            return StepOutcome(state, accepted=False, reasons=reasons, rejection=kind)

        if should_reject:
            if reasons == [KYC_REJECTED]:
                # funds taken from a KYC-rejected buyer: the transition flags the undecided refund
                self._transition(entry, state, command)
            raise UnexpectedSuccess(
                "ledger accepted a call the model rejects",
                command=command,
                state=state,
                detail="; ".join(reasons),
            )

        new = self._transition(entry, state, command)
        mismatches = entry.verify(new, command, result, self.accounts)
        if mismatches:
            raise PostconditionMismatch(
                "post-call ledger state diverges from the model",
                command=command,
                state=state,
                detail="; ".join(str(m) for m in mismatches),
            )

        if self.settings.track_fees and result.receipt is not None:
            new = adjust_eth(new, command.payer, -result.receipt.fee)
        self._check_invariants(state, new, command)
        if self.settings.check_eth_balances:
            await self._check_eth_balances(state, new, command)

        logger.debug(
            "Accepted %r", command,
            extra={**log_extra, "outcome": "accepted", "duration_ms": round((time.monotonic() - started) * 1000, 1)},
        )
        return StepOutcome(new, accepted=True)

    async def run(self, state: ReferenceState, commands: Sequence[Command]) -> tuple[ReferenceState, RunStats]:
        """Run a whole sequence; a failure carries the prefix up to the failing command."""
        stats = RunStats()
        for i, command in enumerate(commands):
            try:
                outcome = await self.step(state, command, step=i)
            except CommandFailure as failure:
                failure.sequence = list(commands[: i + 1])
                failure.step = i
                raise
            stats.record(command, outcome)
            state = outcome.state
        return state, stats

    # ── Helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _transition(entry: CatalogEntry, state: ReferenceState, command: Command) -> ReferenceState:
        try:
            return entry.transition(state, command)
        except UnresolvedBranchError as e:
            raise UnresolvedBranch(str(e), command=command, state=state) from e

    @staticmethod
    def _check_invariants(before: ReferenceState, after: ReferenceState, command: Command) -> None:
        violations = after.check_invariants()
        if before.crowdsale_finalized and not after.crowdsale_finalized:
            violations.append("crowdsale_finalized went from true to false")
        if violations:
            raise InvariantViolation(
                "model invariant broken by an accepted command",
                command=command,
                state=before,
                detail="; ".join(violations),
            )

    async def _charge_failed(
        self, state: ReferenceState, command: Command, block_before: BlockInfo | None
    ) -> ReferenceState:
        """Debit the fee of a rejected transaction when it was mined on its own."""
        if not self.settings.track_fees or command.payer is None or self.chain is None or block_before is None:
            return state
        latest = await self.chain.latest_block()
        if latest.number > block_before.number and latest.transaction_count == 1:
            return adjust_eth(state, command.payer, -latest.gas_used * self.settings.gas_price)
        return state

    async def _check_eth_balances(self, before: ReferenceState, after: ReferenceState, command: Command) -> None:
        mismatches = []
        for index in self.accounts.indexes:
            if index not in after.eth_balances:
                continue
            actual = await self.ledger.eth_balance(self.accounts.address(index))
            if actual != after.eth_balance(index):
                mismatches.append(f"eth_balances[{index}]: expected {after.eth_balance(index)}, got {actual}")
        if mismatches:
            raise PostconditionMismatch(
                "off-chain balances diverge from the model",
                command=command,
                state=before,
                detail="; ".join(mismatches),
            )
