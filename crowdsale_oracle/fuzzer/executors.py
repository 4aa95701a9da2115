"""Command executors and post-condition checks.

An executor issues one command against the ledger (or the chain clock for
``wait_time``) and reads back every field the matching ``verify_*`` function
compares. Reads happen right after the call settles, so verification itself
is pure and runs against the post-transition Reference State.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from crowdsale_oracle.core.config import Settings
from crowdsale_oracle.fuzzer.commands import (
    BurnTokens,
    BuyTokens,
    ClaimVaultFunds,
    FinalizeCrowdsale,
    PauseCrowdsale,
    PauseToken,
    RefundAll,
    RejectPurchase,
    SetToken,
    SetWallet,
    ValidatePurchase,
    WaitTime,
)
from crowdsale_oracle.fuzzer.state import ReferenceState
from crowdsale_oracle.ledger.accounts import AccountBook, AccountIndex
from crowdsale_oracle.ledger.interface import ChainClock, LedgerClient, Receipt


@dataclass
class ExecutionContext:
    """Everything an executor needs to reach the outside world."""
    ledger: LedgerClient
    chain: ChainClock
    accounts: AccountBook
    settings: Settings


@dataclass
class ExecutionResult:
    """Settled call plus the ledger fields read back after it."""
    receipt: Receipt | None = None
    reads: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Mismatch:
    """One post-call field where ledger and model disagree."""
    field: str
    expected: Any
    actual: Any

    def __str__(self) -> str:
        return f"{self.field}: expected {self.expected!r}, got {self.actual!r}"


def _sale_gas_price(state: ReferenceState, gas_price: int | None) -> int:
    return gas_price if gas_price is not None else state.crowdsale.max_gas_price


def _same_address(a: str | None, b: str | None) -> bool:
    return (a or "").lower() == (b or "").lower()


def _check(mismatches: list[Mismatch], name: str, expected: Any, actual: Any) -> None:
    if expected != actual:
        mismatches.append(Mismatch(name, expected, actual))


def _check_address(
    mismatches: list[Mismatch],
    name: str,
    accounts: AccountBook,
    expected: AccountIndex,
    actual: str,
) -> None:
    expected_address = accounts.address(expected)
    if not _same_address(expected_address, actual):
        mismatches.append(Mismatch(name, expected_address, actual))


# ── wait_time ────────────────────────────────────────────────────────────────


async def execute_wait_time(cmd: WaitTime, state: ReferenceState, ctx: ExecutionContext) -> ExecutionResult:
    if cmd.until is not None:
        await ctx.chain.increase_time_to(max(state.now + cmd.seconds, cmd.until))
    else:
        await ctx.chain.increase_time(cmd.seconds)
    block = await ctx.chain.latest_block()
    return ExecutionResult(reads={"timestamp": block.timestamp})


def verify_wait_time(new: ReferenceState, cmd: WaitTime, result: ExecutionResult, accounts: AccountBook) -> list[Mismatch]:
    mismatches: list[Mismatch] = []
    # the node may round up, never down
    if result.reads.get("timestamp", new.now) < new.now:
        mismatches.append(Mismatch("timestamp", f">= {new.now}", result.reads["timestamp"]))
    return mismatches


# ── set_wallet / set_token ───────────────────────────────────────────────────


async def execute_set_wallet(cmd: SetWallet, state: ReferenceState, ctx: ExecutionContext) -> ExecutionResult:
    receipt = await ctx.ledger.set_wallet(
        ctx.accounts.address(cmd.new_account), sender=ctx.accounts.address(cmd.from_account)
    )
    return ExecutionResult(receipt, {"wallet": await ctx.ledger.wallet()})


def verify_set_wallet(new: ReferenceState, cmd: SetWallet, result: ExecutionResult, accounts: AccountBook) -> list[Mismatch]:
    mismatches: list[Mismatch] = []
    _check_address(mismatches, "wallet", accounts, new.wallet, result.reads["wallet"])
    return mismatches


async def execute_set_token(cmd: SetToken, state: ReferenceState, ctx: ExecutionContext) -> ExecutionResult:
    receipt = await ctx.ledger.set_token(
        ctx.accounts.address(cmd.new_token), sender=ctx.accounts.address(cmd.from_account)
    )
    return ExecutionResult(receipt, {"token": await ctx.ledger.token()})


def verify_set_token(new: ReferenceState, cmd: SetToken, result: ExecutionResult, accounts: AccountBook) -> list[Mismatch]:
    mismatches: list[Mismatch] = []
    _check_address(mismatches, "token", accounts, new.token, result.reads["token"])
    return mismatches


# ── Vault ────────────────────────────────────────────────────────────────────


async def execute_claim_vault_funds(cmd: ClaimVaultFunds, state: ReferenceState, ctx: ExecutionContext) -> ExecutionResult:
    sender = ctx.accounts.address(cmd.from_account)
    receipt = await ctx.ledger.claim_vault_funds(sender=sender)
    return ExecutionResult(receipt, {"deposited": await ctx.ledger.vault_deposited(sender)})


def verify_claim_vault_funds(
    new: ReferenceState, cmd: ClaimVaultFunds, result: ExecutionResult, accounts: AccountBook
) -> list[Mismatch]:
    mismatches: list[Mismatch] = []
    _check(mismatches, f"vault[{cmd.from_account}]", new.vault_balance(cmd.from_account), result.reads["deposited"])
    return mismatches


async def execute_refund_all(cmd: RefundAll, state: ReferenceState, ctx: ExecutionContext) -> ExecutionResult:
    receipt = await ctx.ledger.refund_all(list(cmd.indexes), sender=ctx.accounts.address(cmd.from_account))
    deposited = {}
    for account in ctx.accounts.indexes:
        deposited[account] = await ctx.ledger.vault_deposited(ctx.accounts.address(account))
    return ExecutionResult(receipt, {"deposited": deposited})


def verify_refund_all(new: ReferenceState, cmd: RefundAll, result: ExecutionResult, accounts: AccountBook) -> list[Mismatch]:
    mismatches: list[Mismatch] = []
    for account, actual in result.reads["deposited"].items():
        _check(mismatches, f"vault[{account}]", new.vault_balance(account), actual)
    return mismatches


# ── Purchases ────────────────────────────────────────────────────────────────


async def _read_investor(ctx: ExecutionContext, address: str) -> dict[str, Any]:
    return {
        "deposited": await ctx.ledger.vault_deposited(address),
        "token_balance": await ctx.ledger.token_balance(address),
        "wei_raised": await ctx.ledger.wei_raised(),
        "tokens_sold": await ctx.ledger.tokens_sold(),
        "total_supply": await ctx.ledger.total_supply(),
    }


def _verify_investor(new: ReferenceState, account: AccountIndex, reads: dict[str, Any]) -> list[Mismatch]:
    mismatches: list[Mismatch] = []
    _check(mismatches, f"vault[{account}]", new.vault_balance(account), reads["deposited"])
    _check(mismatches, f"token_balances[{account}]", new.token_balance(account), reads["token_balance"])
    _check(mismatches, "wei_raised", new.wei_raised, reads["wei_raised"])
    _check(mismatches, "tokens_sold", new.tokens_sold, reads["tokens_sold"])
    _check(mismatches, "token_supply", new.token_supply, reads["total_supply"])
    return mismatches


async def execute_buy_tokens(cmd: BuyTokens, state: ReferenceState, ctx: ExecutionContext) -> ExecutionResult:
    sender = ctx.accounts.address(cmd.account)
    receipt = await ctx.ledger.buy_tokens(
        sender=sender, value=cmd.wei, gas_price=_sale_gas_price(state, cmd.gas_price)
    )
    return ExecutionResult(receipt, await _read_investor(ctx, sender))


def verify_buy_tokens(new: ReferenceState, cmd: BuyTokens, result: ExecutionResult, accounts: AccountBook) -> list[Mismatch]:
    return _verify_investor(new, cmd.account, result.reads)


async def execute_validate_purchase(cmd: ValidatePurchase, state: ReferenceState, ctx: ExecutionContext) -> ExecutionResult:
    beneficiary = ctx.accounts.address(cmd.beneficiary)
    receipt = await ctx.ledger.validate_purchase(
        beneficiary,
        sender=ctx.accounts.address(cmd.account),
        gas_price=_sale_gas_price(state, cmd.gas_price),
    )
    return ExecutionResult(receipt, await _read_investor(ctx, beneficiary))


def verify_validate_purchase(
    new: ReferenceState, cmd: ValidatePurchase, result: ExecutionResult, accounts: AccountBook
) -> list[Mismatch]:
    return _verify_investor(new, cmd.beneficiary, result.reads)


async def execute_reject_purchase(cmd: RejectPurchase, state: ReferenceState, ctx: ExecutionContext) -> ExecutionResult:
    beneficiary = ctx.accounts.address(cmd.beneficiary)
    receipt = await ctx.ledger.reject_purchase(
        beneficiary,
        sender=ctx.accounts.address(cmd.account),
        gas_price=_sale_gas_price(state, cmd.gas_price),
    )
    return ExecutionResult(receipt, await _read_investor(ctx, beneficiary))


def verify_reject_purchase(
    new: ReferenceState, cmd: RejectPurchase, result: ExecutionResult, accounts: AccountBook
) -> list[Mismatch]:
    return _verify_investor(new, cmd.beneficiary, result.reads)


# ── Pausing ──────────────────────────────────────────────────────────────────


async def execute_pause_crowdsale(cmd: PauseCrowdsale, state: ReferenceState, ctx: ExecutionContext) -> ExecutionResult:
    sender = ctx.accounts.address(cmd.from_account)
    if cmd.pause:
        receipt = await ctx.ledger.pause_crowdsale(sender=sender)
    else:
        receipt = await ctx.ledger.unpause_crowdsale(sender=sender)
    return ExecutionResult(receipt, {"paused": await ctx.ledger.crowdsale_paused()})


def verify_pause_crowdsale(
    new: ReferenceState, cmd: PauseCrowdsale, result: ExecutionResult, accounts: AccountBook
) -> list[Mismatch]:
    mismatches: list[Mismatch] = []
    _check(mismatches, "crowdsale_paused", new.crowdsale_paused, result.reads["paused"])
    return mismatches


async def execute_pause_token(cmd: PauseToken, state: ReferenceState, ctx: ExecutionContext) -> ExecutionResult:
    sender = ctx.accounts.address(cmd.from_account)
    if cmd.pause:
        receipt = await ctx.ledger.pause_token(sender=sender)
    else:
        receipt = await ctx.ledger.unpause_token(sender=sender)
    return ExecutionResult(receipt, {"paused": await ctx.ledger.token_paused()})


def verify_pause_token(new: ReferenceState, cmd: PauseToken, result: ExecutionResult, accounts: AccountBook) -> list[Mismatch]:
    mismatches: list[Mismatch] = []
    _check(mismatches, "token_paused", new.token_paused, result.reads["paused"])
    return mismatches


# ── Finalize / burn ──────────────────────────────────────────────────────────


async def execute_finalize_crowdsale(
    cmd: FinalizeCrowdsale, state: ReferenceState, ctx: ExecutionContext
) -> ExecutionResult:
    receipt = await ctx.ledger.finalize(sender=ctx.accounts.address(cmd.from_account))
    wallet = ctx.accounts.address(state.wallet)
    reads = {
        "total_supply": await ctx.ledger.total_supply(),
        "wallet_tokens": await ctx.ledger.token_balance(wallet),
        "token_owner": await ctx.ledger.token_owner(),
        "finalized": await ctx.ledger.is_finalized(),
        "token_paused": await ctx.ledger.token_paused(),
        "gas_limit": None if ctx.settings.coverage else ctx.settings.finalize_gas_limit,
    }
    return ExecutionResult(receipt, reads)


def verify_finalize_crowdsale(
    new: ReferenceState, cmd: FinalizeCrowdsale, result: ExecutionResult, accounts: AccountBook
) -> list[Mismatch]:
    reads = result.reads
    mismatches: list[Mismatch] = []
    _check(mismatches, "token_supply", new.token_supply, reads["total_supply"])
    _check(mismatches, f"token_balances[{new.wallet}]", new.token_balance(new.wallet), reads["wallet_tokens"])
    _check_address(mismatches, "token_owner", accounts, new.wallet, reads["token_owner"])
    _check(mismatches, "crowdsale_finalized", True, reads["finalized"])
    _check(mismatches, "token_paused", False, reads["token_paused"])
    limit = reads.get("gas_limit")
    if limit is not None and result.receipt is not None and result.receipt.gas_used >= limit:
        mismatches.append(Mismatch("gas_used", f"< {limit}", result.receipt.gas_used))
    return mismatches


async def execute_burn_tokens(cmd: BurnTokens, state: ReferenceState, ctx: ExecutionContext) -> ExecutionResult:
    sender = ctx.accounts.address(cmd.account)
    receipt = await ctx.ledger.burn(cmd.tokens, sender=sender)
    return ExecutionResult(
        receipt,
        {
            "token_balance": await ctx.ledger.token_balance(sender),
            "total_supply": await ctx.ledger.total_supply(),
        },
    )


def verify_burn_tokens(new: ReferenceState, cmd: BurnTokens, result: ExecutionResult, accounts: AccountBook) -> list[Mismatch]:
    mismatches: list[Mismatch] = []
    _check(mismatches, f"token_balances[{cmd.account}]", new.token_balance(cmd.account), result.reads["token_balance"])
    _check(mismatches, "token_supply", new.token_supply, result.reads["total_supply"])
    return mismatches
