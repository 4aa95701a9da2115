"""Tests for the JSON-RPC ledger client, with web3 mocked out."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import ContractLogicError

from crowdsale_oracle.core.config import Settings
from crowdsale_oracle.core.errors import ConfigurationError
from crowdsale_oracle.core.types import RejectionKind
from crowdsale_oracle.ledger.abi import CROWDSALE_ABI, load_artifact, resolve_abi
from crowdsale_oracle.ledger.interface import LedgerCallError
from crowdsale_oracle.ledger.web3_client import Web3Ledger

SENDER = "0x" + "11" * 20


def _raw_receipt(status: int = 1) -> dict:
    return {
        "transactionHash": bytes.fromhex("ab" * 32),
        "blockNumber": 7,
        "gasUsed": 21_000,
        "effectiveGasPrice": 5,
        "status": status,
    }


@pytest.fixture
def w3():
    w3 = MagicMock()
    w3.eth.wait_for_transaction_receipt = AsyncMock(return_value=_raw_receipt())
    w3.provider.make_request = AsyncMock(return_value={"result": "0x1"})
    return w3


@pytest.fixture
def ledger(w3):
    return Web3Ledger(w3, MagicMock(), MagicMock(), MagicMock(), gas_price=22)


def _fn(**kwargs) -> MagicMock:
    fn = MagicMock()
    fn.transact = AsyncMock(**kwargs)
    return fn


class TestSend:

    @pytest.mark.asyncio
    async def test_receipt(self, ledger):
        fn = _fn(return_value=b"\x01")
        receipt = await ledger._send(fn, SENDER, value=5, gas_price=9)
        tx = fn.transact.call_args.args[0]
        assert tx["value"] == 5
        assert tx["gasPrice"] == 9
        assert receipt.block_number == 7
        assert receipt.fee == 21_000 * 5

    @pytest.mark.asyncio
    async def test_default_gas_price_and_no_value(self, ledger):
        fn = _fn(return_value=b"\x01")
        await ledger._send(fn, SENDER)
        tx = fn.transact.call_args.args[0]
        assert tx["gasPrice"] == 22
        assert "value" not in tx

    @pytest.mark.asyncio
    async def test_failed_status(self, ledger, w3):
        w3.eth.wait_for_transaction_receipt = AsyncMock(return_value=_raw_receipt(status=0))
        with pytest.raises(LedgerCallError) as excinfo:
            await ledger._send(_fn(return_value=b"\x01"), SENDER)
        assert excinfo.value.kind is RejectionKind.REVERT
        assert excinfo.value.receipt.gas_used == 21_000

    @pytest.mark.parametrize(
        "error, kind",
        [
            (ContractLogicError("execution reverted: only owner"), RejectionKind.REVERT),
            (ValueError({"message": "VM Exception while processing transaction: invalid opcode"}),
             RejectionKind.INVALID_OPCODE),
            (ValueError({"message": "could not unlock signer account"}), RejectionKind.SIGNER_LOCKED),
            (ValueError("insufficient funds for gas"), RejectionKind.OTHER),
        ],
    )
    @pytest.mark.asyncio
    async def test_error_mapping(self, ledger, error, kind):
        with pytest.raises(LedgerCallError) as excinfo:
            await ledger._send(_fn(side_effect=error), SENDER)
        assert excinfo.value.kind is kind
        assert excinfo.value.__cause__ is error


class TestChainClock:

    @pytest.mark.asyncio
    async def test_increase_time_mines(self, ledger, w3):
        await ledger.increase_time(-5)
        methods = [c.args for c in w3.provider.make_request.call_args_list]
        assert methods == [("evm_increaseTime", [0]), ("evm_mine", [])]

    @pytest.mark.asyncio
    async def test_rpc_error(self, ledger, w3):
        w3.provider.make_request = AsyncMock(return_value={"error": {"message": "method not found"}})
        with pytest.raises(LedgerCallError, match="evm_snapshot"):
            await ledger.snapshot()

    @pytest.mark.asyncio
    async def test_revert_refused(self, ledger, w3):
        w3.provider.make_request = AsyncMock(return_value={"result": False})
        with pytest.raises(LedgerCallError):
            await ledger.revert("0x1")

    @pytest.mark.asyncio
    async def test_connect_requires_address(self):
        with pytest.raises(ConfigurationError):
            await Web3Ledger.connect(Settings(_env_file=None))


class TestArtifacts:

    def test_forge_artifact(self, tmp_path):
        path = tmp_path / "Crowdsale.json"
        path.write_text(json.dumps({"abi": CROWDSALE_ABI[:2], "bytecode": "0x"}))
        assert load_artifact(path) == CROWDSALE_ABI[:2]

    def test_bare_abi(self, tmp_path):
        path = tmp_path / "abi.json"
        path.write_text(json.dumps(CROWDSALE_ABI[:1]))
        assert resolve_abi(str(path), []) == CROWDSALE_ABI[:1]

    def test_missing_abi(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"bytecode": "0x"}))
        with pytest.raises(ValueError):
            load_artifact(path)

    def test_default(self):
        assert resolve_abi("", CROWDSALE_ABI) is CROWDSALE_ABI
