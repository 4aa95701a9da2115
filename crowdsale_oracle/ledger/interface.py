"""Interfaces the oracle needs from the ledger, the chain clock and the node.

The real system is a remote stateful service. The oracle only relies on
the operations below; :mod:`crowdsale_oracle.ledger.web3_client` implements
them over JSON-RPC and :mod:`crowdsale_oracle.ledger.simulated` in memory.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from crowdsale_oracle.core.types import RejectionKind

_MESSAGE_KINDS = (
    ("invalid opcode", RejectionKind.INVALID_OPCODE),
    ("could not unlock signer account", RejectionKind.SIGNER_LOCKED),
    ("unknown account", RejectionKind.SIGNER_LOCKED),
    ("revert", RejectionKind.REVERT),
)


def kind_from_message(message: str, default: RejectionKind = RejectionKind.OTHER) -> RejectionKind:
    """Classify a node error by the text development nodes put in it."""
    lowered = message.lower()
    for needle, kind in _MESSAGE_KINDS:
        if needle in lowered:
            return kind
    return default


class LedgerCallError(Exception):
    """A mutating call was rejected by the ledger (or the node refused to sign it)."""

    def __init__(self, message: str, kind: RejectionKind = RejectionKind.OTHER, receipt: "Receipt | None" = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.receipt = receipt

    def __repr__(self) -> str:
        return f"LedgerCallError({str(self)!r}, kind={self.kind.value})"


@dataclass(frozen=True)
class Receipt:
    """Settled transaction."""
    tx_hash: str
    block_number: int
    gas_used: int
    effective_gas_price: int

    @property
    def fee(self) -> int:
        return self.gas_used * self.effective_gas_price


@dataclass(frozen=True)
class BlockInfo:
    number: int
    timestamp: int
    gas_used: int
    transaction_count: int


@dataclass(frozen=True)
class SaleParameters:
    """Immutable crowdsale configuration as read from the ledger."""
    rate: int
    cap: int
    start_time: int
    end_time: int
    min_invest: int
    max_cumulative_invest: int
    max_gas_price: int
    min_buying_request_interval: int


@runtime_checkable
class LedgerClient(Protocol):
    """Reads and mutating calls against the crowdsale, its token and its vault.

    Every mutating call takes the sender address and either returns a
    :class:`Receipt` or raises :class:`LedgerCallError`.
    """

    # reads
    async def owner(self) -> str: ...
    async def wallet(self) -> str: ...
    async def token(self) -> str: ...
    async def token_contract(self) -> str: ...
    async def vault(self) -> str: ...
    async def crowdsale_paused(self) -> bool: ...
    async def token_paused(self) -> bool: ...
    async def token_owner(self) -> str: ...
    async def is_finalized(self) -> bool: ...
    async def sale_parameters(self) -> SaleParameters: ...
    async def wei_raised(self) -> int: ...
    async def tokens_sold(self) -> int: ...
    async def total_supply(self) -> int: ...
    async def token_balance(self, address: str) -> int: ...
    async def vault_deposited(self, address: str) -> int: ...
    async def eth_balance(self, address: str) -> int: ...

    # mutating calls
    async def set_wallet(self, new_wallet: str, *, sender: str) -> Receipt: ...
    async def set_token(self, new_token: str, *, sender: str) -> Receipt: ...
    async def buy_tokens(self, *, sender: str, value: int, gas_price: int) -> Receipt: ...
    async def validate_purchase(self, beneficiary: str, *, sender: str, gas_price: int) -> Receipt: ...
    async def reject_purchase(self, beneficiary: str, *, sender: str, gas_price: int) -> Receipt: ...
    async def claim_vault_funds(self, *, sender: str) -> Receipt: ...
    async def refund_all(self, indexes: list[int], *, sender: str) -> Receipt: ...
    async def pause_crowdsale(self, *, sender: str) -> Receipt: ...
    async def unpause_crowdsale(self, *, sender: str) -> Receipt: ...
    async def pause_token(self, *, sender: str) -> Receipt: ...
    async def unpause_token(self, *, sender: str) -> Receipt: ...
    async def finalize(self, *, sender: str) -> Receipt: ...
    async def burn(self, amount: int, *, sender: str) -> Receipt: ...


@runtime_checkable
class ChainClock(Protocol):
    """Block inspection and simulated time control."""

    async def accounts(self) -> list[str]: ...
    async def latest_block(self) -> BlockInfo: ...
    async def increase_time(self, seconds: int) -> None: ...
    async def increase_time_to(self, timestamp: int) -> None: ...
    async def snapshot(self) -> str: ...
    async def revert(self, snapshot_id: str) -> None: ...
