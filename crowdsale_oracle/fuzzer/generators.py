"""Hypothesis strategies for crowdsale commands.

Generators know the account book size, the owner, the wallet and the sale
parameters at the start of a run (:class:`GeneratorContext`). Accounts are
sampled uniformly from the book plus the zero address; privileged callers
are biased toward the account that actually holds the privilege so the
interesting paths are not starved.
"""

from __future__ import annotations

from dataclasses import dataclass

from hypothesis import strategies as st

from crowdsale_oracle.fuzzer.commands import (
    BurnTokens,
    BuyTokens,
    ClaimVaultFunds,
    Command,
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
from crowdsale_oracle.fuzzer.state import CrowdsaleData, ReferenceState
from crowdsale_oracle.ledger.accounts import TOKEN, ZERO, AccountIndex

HOUR = 60 * 60


@dataclass(frozen=True)
class GeneratorContext:
    account_count: int
    owner: AccountIndex
    wallet: AccountIndex
    sale: CrowdsaleData

    @classmethod
    def from_state(cls, state: ReferenceState, account_count: int) -> "GeneratorContext":
        return cls(
            account_count=account_count,
            owner=state.owner,
            wallet=state.wallet,
            sale=state.crowdsale,
        )


def accounts(ctx: GeneratorContext) -> st.SearchStrategy[AccountIndex]:
    return st.sampled_from([*range(ctx.account_count), ZERO])


def _privileged(ctx: GeneratorContext, holder: AccountIndex) -> st.SearchStrategy[AccountIndex]:
    return st.one_of(st.just(holder), accounts(ctx))


def _gas_prices(ctx: GeneratorContext) -> st.SearchStrategy[int | None]:
    return st.one_of(st.none(), st.integers(min_value=0, max_value=2 * max(ctx.sale.max_gas_price, 1)))


def _wei(ctx: GeneratorContext) -> st.SearchStrategy[int]:
    return st.integers(min_value=0, max_value=2 * max(ctx.sale.max_cumulative_invest, 1))


# ── Per-kind strategies ──────────────────────────────────────────────────────


def wait_time_commands(ctx: GeneratorContext) -> st.SearchStrategy[WaitTime]:
    duration = max(ctx.sale.end_time - ctx.sale.start_time, 1)
    return st.builds(
        WaitTime,
        seconds=st.one_of(
            st.integers(min_value=0, max_value=HOUR),
            st.integers(min_value=0, max_value=max(duration // 3, 1)),
        ),
    )


def set_wallet_commands(ctx: GeneratorContext) -> st.SearchStrategy[SetWallet]:
    return st.builds(SetWallet, from_account=_privileged(ctx, ctx.owner), new_account=accounts(ctx))


def set_token_commands(ctx: GeneratorContext) -> st.SearchStrategy[SetToken]:
    # only the deployed token (or zero) is a meaningful target
    return st.builds(SetToken, from_account=_privileged(ctx, ctx.owner), new_token=st.sampled_from([TOKEN, ZERO]))


def claim_vault_funds_commands(ctx: GeneratorContext) -> st.SearchStrategy[ClaimVaultFunds]:
    return st.builds(ClaimVaultFunds, from_account=accounts(ctx))


def refund_all_commands(ctx: GeneratorContext) -> st.SearchStrategy[RefundAll]:
    indexes = st.lists(st.integers(min_value=0, max_value=2 * ctx.account_count), max_size=3)
    return st.builds(RefundAll, from_account=_privileged(ctx, ctx.owner), indexes=indexes.map(tuple))


def buy_tokens_commands(ctx: GeneratorContext) -> st.SearchStrategy[BuyTokens]:
    return st.builds(BuyTokens, account=accounts(ctx), wei=_wei(ctx), gas_price=_gas_prices(ctx))


def validate_purchase_commands(ctx: GeneratorContext) -> st.SearchStrategy[ValidatePurchase]:
    return st.builds(
        ValidatePurchase,
        account=_privileged(ctx, ctx.owner),
        beneficiary=accounts(ctx),
        gas_price=_gas_prices(ctx),
    )


def reject_purchase_commands(ctx: GeneratorContext) -> st.SearchStrategy[RejectPurchase]:
    return st.builds(
        RejectPurchase,
        account=_privileged(ctx, ctx.owner),
        beneficiary=accounts(ctx),
        gas_price=_gas_prices(ctx),
    )


def pause_crowdsale_commands(ctx: GeneratorContext) -> st.SearchStrategy[PauseCrowdsale]:
    return st.builds(PauseCrowdsale, from_account=_privileged(ctx, ctx.owner), pause=st.booleans())


def pause_token_commands(ctx: GeneratorContext) -> st.SearchStrategy[PauseToken]:
    # the wallet becomes the token owner on finalize
    return st.builds(PauseToken, from_account=_privileged(ctx, ctx.wallet), pause=st.booleans())


def finalize_crowdsale_commands(ctx: GeneratorContext) -> st.SearchStrategy[FinalizeCrowdsale]:
    return st.builds(FinalizeCrowdsale, from_account=_privileged(ctx, ctx.owner))


def burn_tokens_commands(ctx: GeneratorContext) -> st.SearchStrategy[BurnTokens]:
    ceiling = 2 * max(ctx.sale.max_cumulative_invest * ctx.sale.rate, 1)
    return st.builds(BurnTokens, account=accounts(ctx), tokens=st.integers(min_value=0, max_value=ceiling))


# ── Macro ────────────────────────────────────────────────────────────────────


def fund_crowdsale_to_cap(ctx: GeneratorContext, finalize: bool) -> list[Command]:
    """Expand into the primitive commands that fill the sale up to its cap.

    The owner unpauses the sale, time jumps to the sale start, then pairs of
    maximal purchases and validations are issued from distinct investors
    (never the wallet). With ``finalize`` time jumps past the sale end and
    the owner finalizes. Steps that no longer apply simply become expected
    rejections when they run.
    """
    sale = ctx.sale
    commands: list[Command] = [
        PauseCrowdsale(from_account=ctx.owner, pause=False),
        WaitTime(until=sale.start_time),
    ]

    investors = [i for i in range(ctx.account_count) if i != ctx.wallet]
    if sale.max_cumulative_invest > 0 and investors:
        needed = -(-sale.cap // sale.max_cumulative_invest)
        for n in range(needed):
            investor = investors[n % len(investors)]
            commands.append(BuyTokens(account=investor, wei=sale.max_cumulative_invest))
            commands.append(ValidatePurchase(account=ctx.owner, beneficiary=investor))

    if finalize:
        commands.append(WaitTime(until=sale.end_time + 1))
        commands.append(FinalizeCrowdsale(from_account=ctx.owner))
    return commands


def fund_crowdsale_to_cap_steps(ctx: GeneratorContext) -> st.SearchStrategy[list[Command]]:
    return st.builds(lambda finalize: fund_crowdsale_to_cap(ctx, finalize), st.booleans())
