"""Reference State — what the crowdsale ledger *should* look like.

The state is a plain dataclass with value semantics by convention: nothing
mutates a state it did not create. Transitions call :meth:`ReferenceState.clone`
and return the updated copy, so a state handed to a failure report is the
exact snapshot taken before the failing command.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from crowdsale_oracle.core.types import KYCStatus
from crowdsale_oracle.ledger.accounts import TOKEN, ZERO, AccountIndex
from crowdsale_oracle.ledger.interface import SaleParameters

DAY = 24 * 60 * 60
BONUS_WINDOW = 7 * DAY
BONUS_PERCENT = 105
FOUNDATION_SHARE = 49
SALE_SHARE = 51

CrowdsaleData = SaleParameters


def with_bonus(tokens: int) -> int:
    """Early-bird bonus: +5%, truncating."""
    return tokens * BONUS_PERCENT // 100


def foundation_mint(supply: int) -> int:
    """Tokens minted to the wallet on finalize for a pre-finalize supply."""
    return supply * FOUNDATION_SHARE // SALE_SHARE


def invalid_parameters(data: CrowdsaleData, include_interval: bool = False) -> list[str]:
    """Sale parameters that make every purchase-path call revert."""
    problems: list[str] = []
    for name in ("rate", "cap", "max_gas_price", "min_invest", "max_cumulative_invest"):
        if getattr(data, name) == 0:
            problems.append(f"{name} is zero")
    if include_interval and data.min_buying_request_interval == 0:
        problems.append("min_buying_request_interval is zero")
    if data.min_invest > data.max_cumulative_invest:
        problems.append("min_invest exceeds max_cumulative_invest")
    return problems


@dataclass(frozen=True)
class Purchase:
    """Audit-trail entry for credited tokens."""
    account: AccountIndex
    tokens: int
    rate: int
    wei: int
    beneficiary: AccountIndex | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account,
            "tokens": self.tokens,
            "rate": self.rate,
            "wei": self.wei,
            "beneficiary": self.beneficiary,
        }


@dataclass
class ReferenceState:
    """Expected ledger state, threaded through the driver one command at a time."""
    owner: AccountIndex
    wallet: AccountIndex
    crowdsale: CrowdsaleData
    token_owner: AccountIndex | None = None
    token: AccountIndex = TOKEN
    crowdsale_paused: bool = False
    token_paused: bool = True
    crowdsale_finalized: bool = False
    wei_raised: int = 0
    tokens_sold: int = 0
    crowdsale_supply: int = 0
    token_supply: int = 0
    balances: dict[AccountIndex, int] = field(default_factory=dict)
    vault: dict[AccountIndex, int] = field(default_factory=dict)
    token_balances: dict[AccountIndex, int] = field(default_factory=dict)
    eth_balances: dict[AccountIndex, int] = field(default_factory=dict)
    passed_kyc: dict[AccountIndex, KYCStatus] = field(default_factory=dict)
    bonus: dict[AccountIndex, bool] = field(default_factory=dict)
    funds_owners: list[AccountIndex] = field(default_factory=list)
    purchases: list[Purchase] = field(default_factory=list)
    now: int = 0

    # ── Accessors ────────────────────────────────────────────────────

    def balance(self, account: AccountIndex) -> int:
        return self.balances.get(account, 0)

    def vault_balance(self, account: AccountIndex) -> int:
        return self.vault.get(account, 0)

    def token_balance(self, account: AccountIndex) -> int:
        return self.token_balances.get(account, 0)

    def eth_balance(self, account: AccountIndex) -> int:
        return self.eth_balances.get(account, 0)

    def kyc(self, account: AccountIndex) -> KYCStatus:
        return self.passed_kyc.get(account, KYCStatus.UNSET)

    def has_bonus(self, account: AccountIndex) -> bool:
        return self.bonus.get(account, False)

    def in_sale_window(self) -> bool:
        return self.crowdsale.start_time <= self.now <= self.crowdsale.end_time

    def in_bonus_window(self) -> bool:
        return self.now <= self.crowdsale.start_time + BONUS_WINDOW

    def cap_reached(self) -> bool:
        return self.wei_raised >= self.crowdsale.cap

    def headroom(self) -> int:
        """Wei that can still be raised before the cap."""
        return max(self.crowdsale.cap - self.wei_raised, 0)

    # ── Copies ───────────────────────────────────────────────────────

    def clone(self) -> "ReferenceState":
        return replace(
            self,
            balances=dict(self.balances),
            vault=dict(self.vault),
            token_balances=dict(self.token_balances),
            eth_balances=dict(self.eth_balances),
            passed_kyc=dict(self.passed_kyc),
            bonus=dict(self.bonus),
            funds_owners=list(self.funds_owners),
            purchases=list(self.purchases),
        )

    def at(self, now: int) -> "ReferenceState":
        """Copy observed at chain time ``now``."""
        if now == self.now:
            return self
        return replace(self.clone(), now=now)

    # ── Invariants ───────────────────────────────────────────────────

    def check_invariants(self) -> list[str]:
        """Return descriptions of every violated invariant."""
        violations: list[str] = []
        data = self.crowdsale

        if self.wei_raised > data.cap:
            violations.append(f"wei_raised {self.wei_raised} exceeds cap {data.cap}")

        if (self.purchases or self.funds_owners) and data.min_invest > data.max_cumulative_invest:
            violations.append(
                f"funds accepted with min_invest {data.min_invest} above "
                f"max_cumulative_invest {data.max_cumulative_invest}"
            )

        for account, status in self.passed_kyc.items():
            if status is KYCStatus.APPROVED:
                if self.vault_balance(account) != 0:
                    violations.append(f"approved investor {account} still has {self.vault_balance(account)} in the vault")
                total = self.balance(account) + self.vault_balance(account)
                if total > data.max_cumulative_invest:
                    violations.append(
                        f"approved investor {account} holds {total} above max_cumulative_invest"
                    )
            elif status is KYCStatus.REJECTED and self.vault_balance(account) != 0:
                violations.append(f"rejected investor {account} still has {self.vault_balance(account)} in the vault")

        for name in ("balances", "vault", "token_balances"):
            for account, amount in getattr(self, name).items():
                if amount < 0:
                    violations.append(f"{name}[{account}] is negative ({amount})")

        if self.token_supply < 0 or self.crowdsale_supply < 0:
            violations.append("token supply went negative")

        return violations

    # ── Serialization ────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        def keyed(mapping: dict[AccountIndex, Any]) -> dict[str, Any]:
            return {str(k): (v.value if isinstance(v, KYCStatus) else v) for k, v in mapping.items()}

        return {
            "owner": self.owner,
            "token_owner": self.token_owner,
            "wallet": self.wallet,
            "token": self.token,
            "crowdsale": {
                "rate": self.crowdsale.rate,
                "cap": self.crowdsale.cap,
                "start_time": self.crowdsale.start_time,
                "end_time": self.crowdsale.end_time,
                "min_invest": self.crowdsale.min_invest,
                "max_cumulative_invest": self.crowdsale.max_cumulative_invest,
                "max_gas_price": self.crowdsale.max_gas_price,
                "min_buying_request_interval": self.crowdsale.min_buying_request_interval,
            },
            "crowdsale_paused": self.crowdsale_paused,
            "token_paused": self.token_paused,
            "crowdsale_finalized": self.crowdsale_finalized,
            "wei_raised": self.wei_raised,
            "tokens_sold": self.tokens_sold,
            "crowdsale_supply": self.crowdsale_supply,
            "token_supply": self.token_supply,
            "balances": keyed(self.balances),
            "vault": keyed(self.vault),
            "token_balances": keyed(self.token_balances),
            "eth_balances": keyed(self.eth_balances),
            "passed_kyc": keyed(self.passed_kyc),
            "bonus": keyed(self.bonus),
            "funds_owners": list(self.funds_owners),
            "purchases": [p.to_dict() for p in self.purchases],
            "now": self.now,
        }


# ── Off-chain balance bookkeeping ────────────────────────────────────────────


def credit(mapping: dict[AccountIndex, int], account: AccountIndex, delta: int) -> None:
    """In-place add on a freshly cloned mapping."""
    mapping[account] = mapping.get(account, 0) + delta


def adjust_eth(state: ReferenceState, account: AccountIndex | None, delta: int) -> ReferenceState:
    """Return a copy with ``delta`` added to the tracked off-chain balance.

    The zero address and identities outside the account book are not tracked.
    """
    if account is None or account == ZERO or account == TOKEN or delta == 0:
        return state
    new = state.clone()
    credit(new.eth_balances, account, delta)
    return new
