"""Minimal ABIs for the crowdsale, its token and its vault.

Used when no compiled artifact is configured. Only the functions the
oracle calls are declared.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any


def _fn(
    name: str,
    inputs: tuple[str, ...] = (),
    outputs: tuple[str, ...] = (),
    mutability: str = "view",
) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": f"arg{i}", "type": t} for i, t in enumerate(inputs)],
        "outputs": [{"name": "", "type": t} for t in outputs],
        "stateMutability": mutability,
    }


CROWDSALE_ABI: list[dict[str, Any]] = [
    _fn("owner", outputs=("address",)),
    _fn("wallet", outputs=("address",)),
    _fn("token", outputs=("address",)),
    _fn("vault", outputs=("address",)),
    _fn("paused", outputs=("bool",)),
    _fn("isFinalized", outputs=("bool",)),
    _fn("rate", outputs=("uint256",)),
    _fn("cap", outputs=("uint256",)),
    _fn("startTime", outputs=("uint256",)),
    _fn("endTime", outputs=("uint256",)),
    _fn("minInvest", outputs=("uint256",)),
    _fn("maxCumulativeInvest", outputs=("uint256",)),
    _fn("maxGasPrice", outputs=("uint256",)),
    _fn("minBuyingRequestInterval", outputs=("uint256",)),
    _fn("weiRaised", outputs=("uint256",)),
    _fn("tokensSold", outputs=("uint256",)),
    _fn("setWallet", inputs=("address",), mutability="nonpayable"),
    _fn("setToken", inputs=("address",), mutability="nonpayable"),
    _fn("buyTokens", mutability="payable"),
    _fn("validatePurchase", inputs=("address",), mutability="nonpayable"),
    _fn("rejectPurchase", inputs=("address",), mutability="nonpayable"),
    _fn("claimVaultFunds", mutability="nonpayable"),
    _fn("refundAll", inputs=("uint256[]",), mutability="nonpayable"),
    _fn("pause", mutability="nonpayable"),
    _fn("unpause", mutability="nonpayable"),
    _fn("finalize", mutability="nonpayable"),
]

TOKEN_ABI: list[dict[str, Any]] = [
    _fn("owner", outputs=("address",)),
    _fn("paused", outputs=("bool",)),
    _fn("totalSupply", outputs=("uint256",)),
    _fn("balanceOf", inputs=("address",), outputs=("uint256",)),
    _fn("pause", mutability="nonpayable"),
    _fn("unpause", mutability="nonpayable"),
    _fn("burn", inputs=("uint256",), mutability="nonpayable"),
]

VAULT_ABI: list[dict[str, Any]] = [
    _fn("deposited", inputs=("address",), outputs=("uint256",)),
]


def load_artifact(path: str | Path) -> list[dict[str, Any]]:
    """Read the ABI out of a truffle or forge JSON artifact (or a bare ABI list)."""
    data = json.loads(Path(path).read_text())
    if isinstance(data, list):
        return data
    try:
        return data["abi"]
    except KeyError:
        raise ValueError(f"{path} has no 'abi' entry") from None


def resolve_abi(artifact: str, default: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return load_artifact(artifact) if artifact else default
