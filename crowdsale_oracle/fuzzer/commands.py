"""Command algebra — command values, preconditions and transitions.

Everything in this module is pure. A precondition returns the reasons the
ledger must reject a command (an empty list means the command must be
accepted); a transition returns the Reference State after an accepted
command. Executors live in :mod:`crowdsale_oracle.fuzzer.executors` and are
composed with these functions by the driver, so the same algebra runs in
model-only mode without a ledger.

Rejection rules
---------------
::

    set_wallet          zero caller/wallet · caller ≠ owner
    set_token           zero caller/token · caller ≠ owner · inside sale window
    claim_vault_funds   zero caller · sale paused · sale not finalized
    refund_all          zero caller · paused · not finalized · caller ≠ owner · unknown funder index
    buy_tokens          outside window · paused · bad parameters · finalized · zero buyer · zero value
                        · cumulative max exceeded · below minimum · gas price too high (in window)
                        · cap reached · buyer KYC-rejected
    validate/reject     paused · bad parameters · finalized · zero caller/beneficiary
                        · cumulative max exceeded · vault deposit below minimum
                        · gas price too high (in window) · caller ≠ owner
    pause_crowdsale     no change · caller ≠ owner · zero caller
    pause_token         no change · not finalized · caller ≠ token owner · zero caller
    finalize_crowdsale  finalized · paused · zero caller · caller ≠ owner · before end and cap not reached
    burn_tokens         token paused · insufficient balance · zero amount · zero caller
    wait_time           never
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, ClassVar

from crowdsale_oracle.core.errors import UnresolvedBranchError
from crowdsale_oracle.core.types import CommandKind, KYCStatus
from crowdsale_oracle.fuzzer.state import (
    Purchase,
    ReferenceState,
    credit,
    foundation_mint,
    invalid_parameters,
    with_bonus,
)
from crowdsale_oracle.ledger.accounts import TOKEN, ZERO, AccountIndex


# ── Command values ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Command:
    """Base class of all primitive commands."""

    kind: ClassVar[CommandKind]

    @property
    def payer(self) -> AccountIndex | None:
        """Account that signs (and pays the fee for) the call."""
        return None

    def parties(self) -> tuple[AccountIndex, ...]:
        """Every account selector the call involves."""
        return ()

    def involves_zero(self) -> bool:
        return any(p == ZERO for p in self.parties())

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, tuple):
                data[key] = list(value)
        return {"kind": self.kind.value, **data}


@dataclass(frozen=True)
class WaitTime(Command):
    kind: ClassVar[CommandKind] = CommandKind.WAIT_TIME
    seconds: int = 0
    until: int | None = None  # absolute timestamp, wins over seconds when later


@dataclass(frozen=True)
class SetWallet(Command):
    kind: ClassVar[CommandKind] = CommandKind.SET_WALLET
    from_account: AccountIndex = 0
    new_account: AccountIndex = 0

    @property
    def payer(self) -> AccountIndex | None:
        return self.from_account

    def parties(self) -> tuple[AccountIndex, ...]:
        return (self.from_account, self.new_account)


@dataclass(frozen=True)
class SetToken(Command):
    kind: ClassVar[CommandKind] = CommandKind.SET_TOKEN
    from_account: AccountIndex = 0
    new_token: AccountIndex = TOKEN

    @property
    def payer(self) -> AccountIndex | None:
        return self.from_account

    def parties(self) -> tuple[AccountIndex, ...]:
        return (self.from_account, self.new_token)


@dataclass(frozen=True)
class ClaimVaultFunds(Command):
    kind: ClassVar[CommandKind] = CommandKind.CLAIM_VAULT_FUNDS
    from_account: AccountIndex = 0

    @property
    def payer(self) -> AccountIndex | None:
        return self.from_account

    def parties(self) -> tuple[AccountIndex, ...]:
        return (self.from_account,)


@dataclass(frozen=True)
class RefundAll(Command):
    kind: ClassVar[CommandKind] = CommandKind.REFUND_ALL
    from_account: AccountIndex = 0
    indexes: tuple[int, ...] = ()

    @property
    def payer(self) -> AccountIndex | None:
        return self.from_account

    def parties(self) -> tuple[AccountIndex, ...]:
        return (self.from_account,)


@dataclass(frozen=True)
class BuyTokens(Command):
    kind: ClassVar[CommandKind] = CommandKind.BUY_TOKENS
    account: AccountIndex = 0
    wei: int = 0
    gas_price: int | None = None  # None: the sale's max gas price

    @property
    def payer(self) -> AccountIndex | None:
        return self.account

    def parties(self) -> tuple[AccountIndex, ...]:
        return (self.account,)


@dataclass(frozen=True)
class ValidatePurchase(Command):
    kind: ClassVar[CommandKind] = CommandKind.VALIDATE_PURCHASE
    account: AccountIndex = 0
    beneficiary: AccountIndex = 0
    gas_price: int | None = None

    @property
    def payer(self) -> AccountIndex | None:
        return self.account

    def parties(self) -> tuple[AccountIndex, ...]:
        return (self.account, self.beneficiary)


@dataclass(frozen=True)
class RejectPurchase(Command):
    kind: ClassVar[CommandKind] = CommandKind.REJECT_PURCHASE
    account: AccountIndex = 0
    beneficiary: AccountIndex = 0
    gas_price: int | None = None

    @property
    def payer(self) -> AccountIndex | None:
        return self.account

    def parties(self) -> tuple[AccountIndex, ...]:
        return (self.account, self.beneficiary)


@dataclass(frozen=True)
class PauseCrowdsale(Command):
    kind: ClassVar[CommandKind] = CommandKind.PAUSE_CROWDSALE
    from_account: AccountIndex = 0
    pause: bool = True

    @property
    def payer(self) -> AccountIndex | None:
        return self.from_account

    def parties(self) -> tuple[AccountIndex, ...]:
        return (self.from_account,)


@dataclass(frozen=True)
class PauseToken(Command):
    kind: ClassVar[CommandKind] = CommandKind.PAUSE_TOKEN
    from_account: AccountIndex = 0
    pause: bool = True

    @property
    def payer(self) -> AccountIndex | None:
        return self.from_account

    def parties(self) -> tuple[AccountIndex, ...]:
        return (self.from_account,)


@dataclass(frozen=True)
class FinalizeCrowdsale(Command):
    kind: ClassVar[CommandKind] = CommandKind.FINALIZE_CROWDSALE
    from_account: AccountIndex = 0

    @property
    def payer(self) -> AccountIndex | None:
        return self.from_account

    def parties(self) -> tuple[AccountIndex, ...]:
        return (self.from_account,)


@dataclass(frozen=True)
class BurnTokens(Command):
    kind: ClassVar[CommandKind] = CommandKind.BURN_TOKENS
    account: AccountIndex = 0
    tokens: int = 0

    @property
    def payer(self) -> AccountIndex | None:
        return self.account

    def parties(self) -> tuple[AccountIndex, ...]:
        return (self.account,)


COMMAND_TYPES: dict[CommandKind, type[Command]] = {
    cls.kind: cls
    for cls in (
        WaitTime,
        SetWallet,
        SetToken,
        ClaimVaultFunds,
        RefundAll,
        BuyTokens,
        ValidatePurchase,
        RejectPurchase,
        PauseCrowdsale,
        PauseToken,
        FinalizeCrowdsale,
        BurnTokens,
    )
}


def command_from_dict(data: dict[str, Any]) -> Command:
    """Inverse of :meth:`Command.to_dict`."""
    fields = dict(data)
    try:
        kind = CommandKind(fields.pop("kind"))
    except (KeyError, ValueError) as e:
        raise ValueError(f"unknown command {data.get('kind')!r}") from e
    if "indexes" in fields:
        fields["indexes"] = tuple(fields["indexes"])
    return COMMAND_TYPES[kind](**fields)


# ── Preconditions ────────────────────────────────────────────────────────────


def _gas_exceeded(state: ReferenceState, gas_price: int | None) -> bool:
    return (
        gas_price is not None
        and gas_price > state.crowdsale.max_gas_price
        and state.in_sale_window()
    )


def wait_time_rejections(state: ReferenceState, cmd: WaitTime) -> list[str]:
    return []


def set_wallet_rejections(state: ReferenceState, cmd: SetWallet) -> list[str]:
    reasons: list[str] = []
    if cmd.involves_zero():
        reasons.append("zero address")
    if cmd.from_account != state.owner:
        reasons.append("caller is not the owner")
    return reasons


def set_token_rejections(state: ReferenceState, cmd: SetToken) -> list[str]:
    reasons: list[str] = []
    if cmd.involves_zero():
        reasons.append("zero address")
    if cmd.from_account != state.owner:
        reasons.append("caller is not the owner")
    if state.in_sale_window():
        reasons.append("inside the sale window")
    return reasons


def claim_vault_funds_rejections(state: ReferenceState, cmd: ClaimVaultFunds) -> list[str]:
    reasons: list[str] = []
    if cmd.involves_zero():
        reasons.append("zero address")
    if state.crowdsale_paused:
        reasons.append("crowdsale paused")
    if not state.crowdsale_finalized:
        reasons.append("crowdsale not finalized")
    return reasons


def refund_all_rejections(state: ReferenceState, cmd: RefundAll) -> list[str]:
    reasons = claim_vault_funds_rejections(state, ClaimVaultFunds(from_account=cmd.from_account))
    if cmd.from_account != state.owner:
        reasons.append("caller is not the owner")
    unknown = [i for i in cmd.indexes if i >= len(state.funds_owners)]
    if unknown:
        reasons.append(f"no funder at indexes {unknown}")
    return reasons


KYC_REJECTED = "buyer failed KYC"


def buy_tokens_rejections(state: ReferenceState, cmd: BuyTokens) -> list[str]:
    data = state.crowdsale
    reasons: list[str] = []
    if not state.in_sale_window():
        reasons.append("outside the sale window")
    if state.crowdsale_paused:
        reasons.append("crowdsale paused")
    reasons.extend(invalid_parameters(data))
    if state.crowdsale_finalized:
        reasons.append("crowdsale finalized")
    if cmd.involves_zero():
        reasons.append("zero address")
    if cmd.wei == 0:
        reasons.append("zero value")
    projected = state.balance(cmd.account) + state.vault_balance(cmd.account) + cmd.wei
    if projected > data.max_cumulative_invest:
        reasons.append(f"cumulative investment {projected} above maximum")
    if cmd.wei < data.min_invest:
        reasons.append(f"value {cmd.wei} below minimum investment")
    if _gas_exceeded(state, cmd.gas_price):
        reasons.append(f"gas price {cmd.gas_price} above maximum")
    if state.cap_reached():
        reasons.append("cap reached")
    if state.kyc(cmd.account) is KYCStatus.REJECTED:
        reasons.append(KYC_REJECTED)
    return reasons


def _review_rejections(state: ReferenceState, cmd: ValidatePurchase | RejectPurchase) -> list[str]:
    data = state.crowdsale
    reasons: list[str] = []
    if state.crowdsale_paused:
        reasons.append("crowdsale paused")
    reasons.extend(invalid_parameters(data, include_interval=True))
    if state.crowdsale_finalized:
        reasons.append("crowdsale finalized")
    if cmd.involves_zero():
        reasons.append("zero address")
    deposited = state.vault_balance(cmd.beneficiary)
    projected = state.balance(cmd.beneficiary) + deposited
    if projected > data.max_cumulative_invest:
        reasons.append(f"cumulative investment {projected} above maximum")
    if 0 < deposited < data.min_invest:
        reasons.append(f"vault deposit {deposited} below minimum investment")
    if _gas_exceeded(state, cmd.gas_price):
        reasons.append(f"gas price {cmd.gas_price} above maximum")
    if cmd.account != state.owner:
        reasons.append("caller is not the owner")
    return reasons


def validate_purchase_rejections(state: ReferenceState, cmd: ValidatePurchase) -> list[str]:
    return _review_rejections(state, cmd)


def reject_purchase_rejections(state: ReferenceState, cmd: RejectPurchase) -> list[str]:
    return _review_rejections(state, cmd)


def pause_crowdsale_rejections(state: ReferenceState, cmd: PauseCrowdsale) -> list[str]:
    reasons: list[str] = []
    if state.crowdsale_paused == cmd.pause:
        reasons.append(f"crowdsale already {'paused' if cmd.pause else 'unpaused'}")
    if cmd.from_account != state.owner:
        reasons.append("caller is not the owner")
    if cmd.involves_zero():
        reasons.append("zero address")
    return reasons


def pause_token_rejections(state: ReferenceState, cmd: PauseToken) -> list[str]:
    reasons: list[str] = []
    if state.token_paused == cmd.pause:
        reasons.append(f"token already {'paused' if cmd.pause else 'unpaused'}")
    if not state.crowdsale_finalized:
        reasons.append("crowdsale not finalized")
    if cmd.from_account != state.token_owner:
        reasons.append("caller is not the token owner")
    if cmd.involves_zero():
        reasons.append("zero address")
    return reasons


def finalize_crowdsale_rejections(state: ReferenceState, cmd: FinalizeCrowdsale) -> list[str]:
    reasons: list[str] = []
    if state.crowdsale_finalized:
        reasons.append("crowdsale already finalized")
    if state.crowdsale_paused:
        reasons.append("crowdsale paused")
    if cmd.involves_zero():
        reasons.append("zero address")
    if state.now < state.crowdsale.end_time and not state.cap_reached():
        reasons.append("sale still running and cap not reached")
    if cmd.from_account != state.owner:
        reasons.append("caller is not the owner")
    return reasons


def burn_tokens_rejections(state: ReferenceState, cmd: BurnTokens) -> list[str]:
    reasons: list[str] = []
    if state.token_paused:
        reasons.append("token paused")
    if state.token_balance(cmd.account) < cmd.tokens:
        reasons.append(f"token balance {state.token_balance(cmd.account)} below {cmd.tokens}")
    if cmd.tokens == 0:
        reasons.append("zero amount")
    if cmd.involves_zero():
        reasons.append("zero address")
    return reasons


# ── Transitions ──────────────────────────────────────────────────────────────


def apply_wait_time(state: ReferenceState, cmd: WaitTime) -> ReferenceState:
    target = state.now + cmd.seconds
    if cmd.until is not None:
        target = max(target, cmd.until)
    return state.at(target)


def apply_set_wallet(state: ReferenceState, cmd: SetWallet) -> ReferenceState:
    new = state.clone()
    new.wallet = cmd.new_account
    return new


def apply_set_token(state: ReferenceState, cmd: SetToken) -> ReferenceState:
    new = state.clone()
    new.token = cmd.new_token
    return new


def _refund_vault(state: ReferenceState, account: AccountIndex) -> None:
    deposited = state.vault_balance(account)
    if deposited == 0:
        return
    state.vault[account] = 0
    credit(state.balances, account, deposited)
    credit(state.eth_balances, account, deposited)


def apply_claim_vault_funds(state: ReferenceState, cmd: ClaimVaultFunds) -> ReferenceState:
    new = state.clone()
    _refund_vault(new, cmd.from_account)
    return new


def apply_refund_all(state: ReferenceState, cmd: RefundAll) -> ReferenceState:
    new = state.clone()
    for index in cmd.indexes:
        _refund_vault(new, new.funds_owners[index])
    return new


def _credit_purchase(
    state: ReferenceState,
    beneficiary: AccountIndex,
    wei: int,
    tokens: int,
    buyer: AccountIndex,
) -> None:
    credit(state.balances, beneficiary, wei)
    credit(state.token_balances, beneficiary, tokens)
    state.wei_raised += wei
    state.tokens_sold += tokens
    state.crowdsale_supply += tokens
    state.token_supply += tokens
    state.purchases.append(
        Purchase(
            account=buyer,
            tokens=tokens,
            rate=state.crowdsale.rate,
            wei=wei,
            beneficiary=beneficiary if beneficiary != buyer else None,
        )
    )


def apply_buy_tokens(state: ReferenceState, cmd: BuyTokens) -> ReferenceState:
    new = state.clone()
    account = cmd.account
    status = new.kyc(account)

    if status is KYCStatus.APPROVED:
        wei = min(cmd.wei, new.headroom())
        tokens = wei * new.crowdsale.rate
        if new.in_bonus_window():
            tokens = with_bonus(tokens)
        new.bonus[account] = False
        _credit_purchase(new, account, wei, tokens, buyer=account)
        credit(new.eth_balances, account, -wei)
    elif status is KYCStatus.UNSET:
        if new.in_bonus_window():
            new.bonus[account] = True
        new.funds_owners.append(account)
        credit(new.vault, account, cmd.wei)
        credit(new.eth_balances, account, -cmd.wei)
    else:
        # The ledger must reject these; what it does with the value if it
        # ever accepts one is not decided.
        raise UnresolvedBranchError(
            f"buy_tokens accepted from KYC-rejected investor {account}: refund behaviour is undecided"
        )
    return new


def apply_validate_purchase(state: ReferenceState, cmd: ValidatePurchase) -> ReferenceState:
    new = state.clone()
    beneficiary = cmd.beneficiary
    deposited = new.vault_balance(beneficiary)
    new.passed_kyc[beneficiary] = KYCStatus.APPROVED

    if deposited > 0:
        wei = min(deposited, new.headroom())
        tokens = wei * new.crowdsale.rate
        if new.has_bonus(beneficiary):
            tokens = with_bonus(tokens)
            new.bonus[beneficiary] = False
        new.vault[beneficiary] = 0
        _credit_purchase(new, beneficiary, wei, tokens, buyer=cmd.account)
        # anything above the cap goes back to the investor
        credit(new.eth_balances, beneficiary, deposited - wei)
    return new


def apply_reject_purchase(state: ReferenceState, cmd: RejectPurchase) -> ReferenceState:
    new = state.clone()
    new.passed_kyc[cmd.beneficiary] = KYCStatus.REJECTED
    _refund_vault(new, cmd.beneficiary)
    return new


def apply_pause_crowdsale(state: ReferenceState, cmd: PauseCrowdsale) -> ReferenceState:
    new = state.clone()
    new.crowdsale_paused = cmd.pause
    return new


def apply_pause_token(state: ReferenceState, cmd: PauseToken) -> ReferenceState:
    new = state.clone()
    new.token_paused = cmd.pause
    return new


def apply_finalize_crowdsale(state: ReferenceState, cmd: FinalizeCrowdsale) -> ReferenceState:
    new = state.clone()
    minted = foundation_mint(new.token_supply)
    credit(new.token_balances, new.wallet, minted)
    new.token_supply += minted
    new.crowdsale_finalized = True
    new.token_paused = False
    new.token_owner = new.wallet
    credit(new.eth_balances, new.wallet, new.wei_raised)
    return new


def apply_burn_tokens(state: ReferenceState, cmd: BurnTokens) -> ReferenceState:
    new = state.clone()
    credit(new.token_balances, cmd.account, -cmd.tokens)
    new.token_supply -= cmd.tokens
    new.crowdsale_supply -= cmd.tokens
    return new
