"""In-memory crowdsale ledger.

A self-contained implementation of the KYC-gated crowdsale, its token and
its vault behind the same :class:`LedgerClient` / :class:`ChainClock`
interfaces the JSON-RPC client exposes. It backs the test-suite and the
``simulate`` command, and doubles as an executable description of the
contract the oracle expects.

Chain semantics follow a development node: every transaction (reverted
or not) is mined in its own block at the current chain time, gas is
charged either way, and the node refuses to sign for the zero address.
"""

from __future__ import annotations

import copy
import hashlib
import logging
from typing import Any, Callable

from web3 import Web3

from crowdsale_oracle.core.config import Settings
from crowdsale_oracle.core.types import KYCStatus, RejectionKind
from crowdsale_oracle.ledger.accounts import ZERO_ADDRESS
from crowdsale_oracle.ledger.interface import BlockInfo, LedgerCallError, Receipt, SaleParameters

logger = logging.getLogger(__name__)

GENESIS_TIME = 1_700_000_000
BONUS_WINDOW = 7 * 24 * 60 * 60
CALL_GAS = 60_000
FINALIZE_GAS = 180_000

CROWDSALE_ADDRESS = Web3.to_checksum_address("0x" + "c5" * 20)
TOKEN_ADDRESS = Web3.to_checksum_address("0x" + "70" * 20)
VAULT_ADDRESS = Web3.to_checksum_address("0x" + "7a" * 20)

_MUTABLE_FIELDS = (
    "_wallet",
    "_token",
    "_paused",
    "_token_paused",
    "_token_owner",
    "_finalized",
    "_wei_raised",
    "_tokens_sold",
    "_total_supply",
    "_token_balances",
    "_deposited",
    "_committed",
    "_kyc",
    "_bonus",
    "_funds_owners",
    "_eth",
    "_now",
    "_blocks",
)


def simulated_addresses(count: int) -> list[str]:
    return [Web3.to_checksum_address(f"0x{i + 1:040x}") for i in range(count)]


def _key(address: str) -> str:
    return address.lower()


def _require(condition: bool, reason: str) -> None:
    if not condition:
        raise LedgerCallError(f"VM Exception while processing transaction: revert ({reason})", RejectionKind.REVERT)


class SimulatedCrowdsale:
    """Crowdsale, token and vault state plus a development-chain clock."""

    def __init__(
        self,
        addresses: list[str],
        params: SaleParameters,
        *,
        owner_index: int = 0,
        wallet_index: int = 1,
        genesis_time: int = GENESIS_TIME,
        initial_eth: int = 10**21,
        default_gas_price: int = 22 * 10**9,
    ) -> None:
        if len(addresses) < 2:
            raise ValueError("the simulated ledger needs at least two accounts")
        self.address = CROWDSALE_ADDRESS
        self._addresses = list(addresses)
        self._known = {_key(a) for a in addresses}
        self._params = params
        self._default_gas_price = default_gas_price
        self._owner = addresses[owner_index]
        self._wallet = addresses[wallet_index]
        self._token = TOKEN_ADDRESS
        self._paused = False
        self._token_paused = True
        self._token_owner = self.address
        self._finalized = False
        self._wei_raised = 0
        self._tokens_sold = 0
        self._total_supply = 0
        self._token_balances: dict[str, int] = {}
        self._deposited: dict[str, int] = {}
        # cumulative wei committed per investor, refunds included
        self._committed: dict[str, int] = {}
        self._kyc: dict[str, KYCStatus] = {}
        self._bonus: dict[str, bool] = {}
        self._funds_owners: list[str] = []
        self._eth: dict[str, int] = {_key(a): initial_eth for a in addresses}
        self._now = genesis_time
        self._blocks: list[BlockInfo] = [BlockInfo(number=0, timestamp=genesis_time, gas_used=0, transaction_count=0)]
        self._snapshots: dict[str, dict[str, Any]] = {}
        self._snapshot_seq = 0

    @classmethod
    def from_settings(cls, settings: Settings, genesis_time: int = GENESIS_TIME) -> "SimulatedCrowdsale":
        start = genesis_time + settings.sim_start_offset
        params = SaleParameters(
            rate=settings.sim_rate,
            cap=settings.sim_cap,
            start_time=start,
            end_time=start + settings.sim_duration,
            min_invest=settings.sim_min_invest,
            max_cumulative_invest=settings.sim_max_cumulative_invest,
            max_gas_price=settings.sim_max_gas_price,
            min_buying_request_interval=settings.sim_min_buying_request_interval,
        )
        return cls(
            simulated_addresses(settings.account_count),
            params,
            genesis_time=genesis_time,
            initial_eth=settings.sim_initial_eth,
            default_gas_price=settings.gas_price,
        )

    # ── ChainClock ───────────────────────────────────────────────────

    async def accounts(self) -> list[str]:
        return list(self._addresses)

    async def latest_block(self) -> BlockInfo:
        return self._blocks[-1]

    async def increase_time(self, seconds: int) -> None:
        self._now += max(seconds, 0)
        self._mine(gas_used=0, transaction_count=0)

    async def increase_time_to(self, timestamp: int) -> None:
        await self.increase_time(timestamp - self._now)

    async def snapshot(self) -> str:
        self._snapshot_seq += 1
        snapshot_id = hex(self._snapshot_seq)
        self._snapshots[snapshot_id] = {name: copy.deepcopy(getattr(self, name)) for name in _MUTABLE_FIELDS}
        return snapshot_id

    async def revert(self, snapshot_id: str) -> None:
        try:
            saved = self._snapshots.pop(snapshot_id)
        except KeyError:
            raise LedgerCallError(f"unknown snapshot {snapshot_id}") from None
        for name, value in saved.items():
            setattr(self, name, value)

    # ── Reads ────────────────────────────────────────────────────────

    async def owner(self) -> str:
        return self._owner

    async def wallet(self) -> str:
        return self._wallet

    async def token(self) -> str:
        return self._token

    async def token_contract(self) -> str:
        return TOKEN_ADDRESS

    async def vault(self) -> str:
        return VAULT_ADDRESS

    async def crowdsale_paused(self) -> bool:
        return self._paused

    async def token_paused(self) -> bool:
        return self._token_paused

    async def token_owner(self) -> str:
        return self._token_owner

    async def is_finalized(self) -> bool:
        return self._finalized

    async def sale_parameters(self) -> SaleParameters:
        return self._params

    async def wei_raised(self) -> int:
        return self._wei_raised

    async def tokens_sold(self) -> int:
        return self._tokens_sold

    async def total_supply(self) -> int:
        return self._total_supply

    async def token_balance(self, address: str) -> int:
        return self._token_balances.get(_key(address), 0)

    async def vault_deposited(self, address: str) -> int:
        return self._deposited.get(_key(address), 0)

    async def eth_balance(self, address: str) -> int:
        return self._eth.get(_key(address), 0)

    # ── Mutating calls ───────────────────────────────────────────────

    async def set_wallet(self, new_wallet: str, *, sender: str) -> Receipt:
        def body(caller: str) -> None:
            _require(_key(new_wallet) != ZERO_ADDRESS, "zero wallet")
            self._only_owner(caller)
            self._wallet = new_wallet

        return self._transact(sender, body)

    async def set_token(self, new_token: str, *, sender: str) -> Receipt:
        def body(caller: str) -> None:
            _require(_key(new_token) != ZERO_ADDRESS, "zero token")
            self._only_owner(caller)
            _require(not self._in_sale_window(), "sale running")
            self._token = new_token

        return self._transact(sender, body)

    async def buy_tokens(self, *, sender: str, value: int, gas_price: int) -> Receipt:
        p = self._params

        def body(caller: str) -> None:
            investor = _key(caller)
            _require(self._in_sale_window(), "outside sale window")
            self._purchase_checks()
            _require(value > 0, "zero value")
            committed = self._committed.get(investor, 0) + self._deposited.get(investor, 0) + value
            _require(committed <= p.max_cumulative_invest, "max cumulative invest exceeded")
            _require(value >= p.min_invest, "below min invest")
            _require(gas_price <= p.max_gas_price, "gas price too high")
            _require(self._wei_raised < p.cap, "cap reached")
            status = self._kyc.get(investor, KYCStatus.UNSET)
            _require(status is not KYCStatus.REJECTED, "kyc rejected")

            self._eth[investor] -= value
            if status is KYCStatus.APPROVED:
                wei = min(value, p.cap - self._wei_raised)
                tokens = wei * p.rate
                if self._in_bonus_window():
                    tokens = tokens * 105 // 100
                self._bonus[investor] = False
                self._credit(investor, wei, tokens)
                self._eth[investor] += value - wei
            else:
                if self._in_bonus_window():
                    self._bonus[investor] = True
                self._funds_owners.append(investor)
                self._deposited[investor] = self._deposited.get(investor, 0) + value

        return self._transact(sender, body, gas_price=gas_price)

    async def validate_purchase(self, beneficiary: str, *, sender: str, gas_price: int) -> Receipt:
        p = self._params

        def body(caller: str) -> None:
            investor = _key(beneficiary)
            self._review_checks(caller, investor, gas_price)
            self._kyc[investor] = KYCStatus.APPROVED
            deposited = self._deposited.get(investor, 0)
            if deposited == 0:
                return
            wei = min(deposited, p.cap - self._wei_raised)
            tokens = wei * p.rate
            if self._bonus.get(investor, False):
                tokens = tokens * 105 // 100
                self._bonus[investor] = False
            self._deposited[investor] = 0
            self._credit(investor, wei, tokens)
            self._eth[investor] = self._eth.get(investor, 0) + deposited - wei

        return self._transact(sender, body, gas_price=gas_price)

    async def reject_purchase(self, beneficiary: str, *, sender: str, gas_price: int) -> Receipt:
        def body(caller: str) -> None:
            investor = _key(beneficiary)
            self._review_checks(caller, investor, gas_price)
            self._kyc[investor] = KYCStatus.REJECTED
            self._refund(investor)

        return self._transact(sender, body, gas_price=gas_price)

    async def claim_vault_funds(self, *, sender: str) -> Receipt:
        def body(caller: str) -> None:
            _require(not self._paused, "paused")
            _require(self._finalized, "not finalized")
            self._refund(_key(caller))

        return self._transact(sender, body)

    async def refund_all(self, indexes: list[int], *, sender: str) -> Receipt:
        def body(caller: str) -> None:
            _require(not self._paused, "paused")
            _require(self._finalized, "not finalized")
            self._only_owner(caller)
            _require(all(i < len(self._funds_owners) for i in indexes), "invalid funder index")
            for i in indexes:
                self._refund(self._funds_owners[i])

        return self._transact(sender, body)

    async def pause_crowdsale(self, *, sender: str) -> Receipt:
        return self._transact(sender, lambda caller: self._set_paused(caller, True))

    async def unpause_crowdsale(self, *, sender: str) -> Receipt:
        return self._transact(sender, lambda caller: self._set_paused(caller, False))

    async def pause_token(self, *, sender: str) -> Receipt:
        return self._transact(sender, lambda caller: self._set_token_paused(caller, True))

    async def unpause_token(self, *, sender: str) -> Receipt:
        return self._transact(sender, lambda caller: self._set_token_paused(caller, False))

    async def finalize(self, *, sender: str) -> Receipt:
        def body(caller: str) -> None:
            _require(not self._finalized, "already finalized")
            _require(not self._paused, "paused")
            _require(self._now >= self._params.end_time or self._wei_raised >= self._params.cap, "sale running")
            self._only_owner(caller)
            wallet = _key(self._wallet)
            minted = self._total_supply * 49 // 51
            self._token_balances[wallet] = self._token_balances.get(wallet, 0) + minted
            self._total_supply += minted
            self._finalized = True
            self._token_paused = False
            self._token_owner = self._wallet
            self._eth[wallet] = self._eth.get(wallet, 0) + self._wei_raised

        return self._transact(sender, body, gas=FINALIZE_GAS)

    async def burn(self, amount: int, *, sender: str) -> Receipt:
        def body(caller: str) -> None:
            holder = _key(caller)
            _require(not self._token_paused, "token paused")
            _require(amount > 0, "zero amount")
            _require(self._token_balances.get(holder, 0) >= amount, "insufficient balance")
            self._token_balances[holder] -= amount
            self._total_supply -= amount

        return self._transact(sender, body)

    # ── Internals ────────────────────────────────────────────────────

    def _in_sale_window(self) -> bool:
        return self._params.start_time <= self._now <= self._params.end_time

    def _in_bonus_window(self) -> bool:
        return self._now <= self._params.start_time + BONUS_WINDOW

    def _only_owner(self, caller: str) -> None:
        _require(_key(caller) == _key(self._owner), "only owner")

    def _purchase_checks(self) -> None:
        p = self._params
        _require(not self._paused, "paused")
        _require(
            p.rate > 0 and p.cap > 0 and p.max_gas_price > 0 and p.min_invest > 0 and p.max_cumulative_invest > 0,
            "invalid sale parameters",
        )
        _require(p.min_invest <= p.max_cumulative_invest, "invalid sale parameters")
        _require(not self._finalized, "finalized")

    def _review_checks(self, caller: str, investor: str, gas_price: int) -> None:
        p = self._params
        self._purchase_checks()
        _require(p.min_buying_request_interval > 0, "invalid sale parameters")
        _require(investor != ZERO_ADDRESS, "zero beneficiary")
        deposited = self._deposited.get(investor, 0)
        _require(self._committed.get(investor, 0) + deposited <= p.max_cumulative_invest, "max cumulative invest exceeded")
        _require(deposited == 0 or deposited >= p.min_invest, "below min invest")
        if self._in_sale_window():
            _require(gas_price <= p.max_gas_price, "gas price too high")
        self._only_owner(caller)

    def _credit(self, investor: str, wei: int, tokens: int) -> None:
        self._committed[investor] = self._committed.get(investor, 0) + wei
        self._token_balances[investor] = self._token_balances.get(investor, 0) + tokens
        self._wei_raised += wei
        self._tokens_sold += tokens
        self._total_supply += tokens

    def _refund(self, investor: str) -> None:
        deposited = self._deposited.get(investor, 0)
        if deposited == 0:
            return
        self._deposited[investor] = 0
        self._committed[investor] = self._committed.get(investor, 0) + deposited
        self._eth[investor] = self._eth.get(investor, 0) + deposited

    def _set_paused(self, caller: str, paused: bool) -> None:
        _require(self._paused != paused, "no change")
        self._only_owner(caller)
        self._paused = paused

    def _set_token_paused(self, caller: str, paused: bool) -> None:
        _require(self._finalized, "crowdsale not finalized")
        _require(_key(caller) == _key(self._token_owner), "only token owner")
        _require(self._token_paused != paused, "no change")
        self._token_paused = paused

    def _mine(self, gas_used: int, transaction_count: int) -> BlockInfo:
        block = BlockInfo(
            number=self._blocks[-1].number + 1,
            timestamp=self._now,
            gas_used=gas_used,
            transaction_count=transaction_count,
        )
        self._blocks.append(block)
        return block

    def _transact(
        self,
        sender: str,
        body: Callable[[str], None],
        *,
        gas_price: int | None = None,
        gas: int = CALL_GAS,
    ) -> Receipt:
        caller = _key(sender)
        if caller == ZERO_ADDRESS or caller not in self._known:
            raise LedgerCallError(
                f"could not unlock signer account {sender}", RejectionKind.SIGNER_LOCKED
            )

        block = self._mine(gas_used=gas, transaction_count=1)
        receipt = Receipt(
            tx_hash="0x" + hashlib.sha256(f"{block.number}-{caller}".encode()).hexdigest(),
            block_number=block.number,
            gas_used=gas,
            effective_gas_price=self._default_gas_price if gas_price is None else gas_price,
        )
        self._eth[caller] -= receipt.fee
        try:
            body(sender)
        except LedgerCallError as e:
            e.receipt = receipt
            logger.debug("Simulated revert in block %d: %s", block.number, e)
            raise
        return receipt
