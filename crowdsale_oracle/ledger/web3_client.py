"""JSON-RPC ledger client built on web3.py.

Talks to a development node (ganache, hardhat, anvil) that exposes the
``evm_*`` time and snapshot methods and holds unlocked accounts.
"""

from __future__ import annotations

import logging
from typing import Any

from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, Web3Exception

from crowdsale_oracle.core.config import Settings
from crowdsale_oracle.core.errors import ConfigurationError
from crowdsale_oracle.core.types import RejectionKind
from crowdsale_oracle.ledger.abi import CROWDSALE_ABI, TOKEN_ABI, VAULT_ABI, resolve_abi
from crowdsale_oracle.ledger.interface import (
    BlockInfo,
    LedgerCallError,
    Receipt,
    SaleParameters,
    kind_from_message,
)

logger = logging.getLogger(__name__)


def _checksum(address: str) -> str:
    return Web3.to_checksum_address(address)


class Web3Ledger:
    """:class:`LedgerClient` and :class:`ChainClock` over an ``AsyncWeb3`` connection."""

    def __init__(
        self,
        w3: AsyncWeb3,
        crowdsale: Any,
        token: Any,
        vault: Any,
        *,
        gas_price: int,
        receipt_timeout: float = 120.0,
    ) -> None:
        self._w3 = w3
        self._crowdsale = crowdsale
        self._token = token
        self._vault = vault
        self._gas_price = gas_price
        self._receipt_timeout = receipt_timeout

    @classmethod
    async def connect(cls, settings: Settings) -> "Web3Ledger":
        if not settings.crowdsale_address:
            raise ConfigurationError("crowdsale_address is not set")

        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.rpc_url))
        if not await w3.is_connected():
            raise ConfigurationError(f"cannot reach node at {settings.rpc_url}")

        crowdsale = w3.eth.contract(
            address=_checksum(settings.crowdsale_address),
            abi=resolve_abi(settings.crowdsale_artifact, CROWDSALE_ABI),
        )
        token_address = settings.token_address or await crowdsale.functions.token().call()
        vault_address = await crowdsale.functions.vault().call()
        token = w3.eth.contract(address=_checksum(token_address), abi=resolve_abi(settings.token_artifact, TOKEN_ABI))
        vault = w3.eth.contract(address=_checksum(vault_address), abi=resolve_abi(settings.vault_artifact, VAULT_ABI))

        logger.info(
            "Connected to %s: crowdsale=%s token=%s vault=%s",
            settings.rpc_url, crowdsale.address, token.address, vault.address,
        )
        return cls(
            w3,
            crowdsale,
            token,
            vault,
            gas_price=settings.gas_price,
            receipt_timeout=settings.receipt_timeout,
        )

    # ── Transactions ─────────────────────────────────────────────────

    async def _send(self, fn: Any, sender: str, *, value: int = 0, gas_price: int | None = None) -> Receipt:
        tx: dict[str, Any] = {
            "from": _checksum(sender),
            "gasPrice": self._gas_price if gas_price is None else gas_price,
        }
        if value:
            tx["value"] = value

        try:
            tx_hash = await fn.transact(tx)
            raw = await self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        except ContractLogicError as e:
            raise LedgerCallError(str(e), kind_from_message(str(e), RejectionKind.REVERT)) from e
        except (Web3Exception, ValueError) as e:
            # node-level refusals (locked signer, invalid opcode on estimate) arrive as RPC errors
            raise LedgerCallError(str(e), kind_from_message(str(e))) from e

        receipt = Receipt(
            tx_hash=raw["transactionHash"].hex(),
            block_number=raw["blockNumber"],
            gas_used=raw["gasUsed"],
            effective_gas_price=raw.get("effectiveGasPrice", tx["gasPrice"]),
        )
        if raw["status"] == 0:
            raise LedgerCallError(
                f"transaction {receipt.tx_hash} reverted", RejectionKind.REVERT, receipt=receipt
            )
        return receipt

    async def set_wallet(self, new_wallet: str, *, sender: str) -> Receipt:
        return await self._send(self._crowdsale.functions.setWallet(_checksum(new_wallet)), sender)

    async def set_token(self, new_token: str, *, sender: str) -> Receipt:
        return await self._send(self._crowdsale.functions.setToken(_checksum(new_token)), sender)

    async def buy_tokens(self, *, sender: str, value: int, gas_price: int) -> Receipt:
        return await self._send(self._crowdsale.functions.buyTokens(), sender, value=value, gas_price=gas_price)

    async def validate_purchase(self, beneficiary: str, *, sender: str, gas_price: int) -> Receipt:
        fn = self._crowdsale.functions.validatePurchase(_checksum(beneficiary))
        return await self._send(fn, sender, gas_price=gas_price)

    async def reject_purchase(self, beneficiary: str, *, sender: str, gas_price: int) -> Receipt:
        fn = self._crowdsale.functions.rejectPurchase(_checksum(beneficiary))
        return await self._send(fn, sender, gas_price=gas_price)

    async def claim_vault_funds(self, *, sender: str) -> Receipt:
        return await self._send(self._crowdsale.functions.claimVaultFunds(), sender)

    async def refund_all(self, indexes: list[int], *, sender: str) -> Receipt:
        return await self._send(self._crowdsale.functions.refundAll(list(indexes)), sender)

    async def pause_crowdsale(self, *, sender: str) -> Receipt:
        return await self._send(self._crowdsale.functions.pause(), sender)

    async def unpause_crowdsale(self, *, sender: str) -> Receipt:
        return await self._send(self._crowdsale.functions.unpause(), sender)

    async def pause_token(self, *, sender: str) -> Receipt:
        return await self._send(self._token.functions.pause(), sender)

    async def unpause_token(self, *, sender: str) -> Receipt:
        return await self._send(self._token.functions.unpause(), sender)

    async def finalize(self, *, sender: str) -> Receipt:
        return await self._send(self._crowdsale.functions.finalize(), sender)

    async def burn(self, amount: int, *, sender: str) -> Receipt:
        return await self._send(self._token.functions.burn(amount), sender)

    # ── Reads ────────────────────────────────────────────────────────

    async def owner(self) -> str:
        return await self._crowdsale.functions.owner().call()

    async def wallet(self) -> str:
        return await self._crowdsale.functions.wallet().call()

    async def token(self) -> str:
        return await self._crowdsale.functions.token().call()

    async def token_contract(self) -> str:
        return self._token.address

    async def vault(self) -> str:
        return self._vault.address

    async def crowdsale_paused(self) -> bool:
        return await self._crowdsale.functions.paused().call()

    async def token_paused(self) -> bool:
        return await self._token.functions.paused().call()

    async def token_owner(self) -> str:
        return await self._token.functions.owner().call()

    async def is_finalized(self) -> bool:
        return await self._crowdsale.functions.isFinalized().call()

    async def sale_parameters(self) -> SaleParameters:
        f = self._crowdsale.functions
        return SaleParameters(
            rate=await f.rate().call(),
            cap=await f.cap().call(),
            start_time=await f.startTime().call(),
            end_time=await f.endTime().call(),
            min_invest=await f.minInvest().call(),
            max_cumulative_invest=await f.maxCumulativeInvest().call(),
            max_gas_price=await f.maxGasPrice().call(),
            min_buying_request_interval=await f.minBuyingRequestInterval().call(),
        )

    async def wei_raised(self) -> int:
        return await self._crowdsale.functions.weiRaised().call()

    async def tokens_sold(self) -> int:
        return await self._crowdsale.functions.tokensSold().call()

    async def total_supply(self) -> int:
        return await self._token.functions.totalSupply().call()

    async def token_balance(self, address: str) -> int:
        return await self._token.functions.balanceOf(_checksum(address)).call()

    async def vault_deposited(self, address: str) -> int:
        return await self._vault.functions.deposited(_checksum(address)).call()

    async def eth_balance(self, address: str) -> int:
        return await self._w3.eth.get_balance(_checksum(address))

    # ── Chain clock ──────────────────────────────────────────────────

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        response = await self._w3.provider.make_request(method, params)
        if "error" in response:
            raise LedgerCallError(f"{method} failed: {response['error']}")
        return response.get("result")

    async def accounts(self) -> list[str]:
        return list(await self._w3.eth.accounts)

    async def latest_block(self) -> BlockInfo:
        block = await self._w3.eth.get_block("latest")
        return BlockInfo(
            number=block["number"],
            timestamp=block["timestamp"],
            gas_used=block["gasUsed"],
            transaction_count=len(block["transactions"]),
        )

    async def increase_time(self, seconds: int) -> None:
        await self._rpc("evm_increaseTime", [max(seconds, 0)])
        await self._rpc("evm_mine", [])

    async def increase_time_to(self, timestamp: int) -> None:
        latest = await self.latest_block()
        await self.increase_time(timestamp - latest.timestamp)

    async def snapshot(self) -> str:
        return await self._rpc("evm_snapshot", [])

    async def revert(self, snapshot_id: str) -> None:
        if not await self._rpc("evm_revert", [snapshot_id]):
            raise LedgerCallError(f"evm_revert refused snapshot {snapshot_id}")
