"""Saved failing sequences: JSON codec, isolated replay and minimization."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from crowdsale_oracle.core.errors import CommandFailure
from crowdsale_oracle.core.types import FailureKind, FailureReport
from crowdsale_oracle.fuzzer.commands import Command, command_from_dict
from crowdsale_oracle.fuzzer.driver import OracleDriver, RunStats
from crowdsale_oracle.fuzzer.state import ReferenceState

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


# ── Codec ────────────────────────────────────────────────────────────────────


def save_failure(path: str | Path, report: FailureReport, campaign_id: str = "") -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "version": FORMAT_VERSION,
        "campaign_id": campaign_id,
        "commands": report.sequence,
        "failure": report.model_dump(mode="json"),
    }
    path.write_text(json.dumps(payload, indent=2))
    return path


def save_sequence(path: str | Path, commands: Sequence[Command]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"version": FORMAT_VERSION, "commands": [c.to_dict() for c in commands]}, indent=2))
    return path


def load_sequence(path: str | Path) -> list[Command]:
    """Read the commands of a file written by :func:`save_failure` or :func:`save_sequence`."""
    data: Any = json.loads(Path(path).read_text())
    if isinstance(data, list):
        raw = data
    else:
        raw = data.get("commands")
        if raw is None:
            raise ValueError(f"{path} holds no command sequence")
    return [command_from_dict(entry) for entry in raw]


# ── Replay ───────────────────────────────────────────────────────────────────


async def run_isolated(
    driver: OracleDriver, initial: ReferenceState, commands: Sequence[Command]
) -> tuple[ReferenceState, RunStats]:
    """Run a sequence on a fresh chain snapshot and roll the chain back afterwards."""
    if driver.chain is None:
        return await driver.run(initial, commands)
    snapshot_id = await driver.chain.snapshot()
    try:
        return await driver.run(initial, commands)
    finally:
        await driver.chain.revert(snapshot_id)


async def replay(
    driver: OracleDriver, initial: ReferenceState, commands: Sequence[Command]
) -> CommandFailure | None:
    """Return the failure a sequence triggers, or None when it passes."""
    try:
        await run_isolated(driver, initial, commands)
    except CommandFailure as failure:
        return failure
    return None


# ── Minimization ─────────────────────────────────────────────────────────────


class SequenceMinimizer:
    """Delta-debugging minimization of a failing sequence.

    Iteratively removes chunks of commands (halves, then quarters, ...)
    while the failure still reproduces.
    """

    def __init__(self, reproduces: Callable[[list[Command]], Awaitable[bool]]) -> None:
        self._reproduces = reproduces
        self.attempts = 0

    @classmethod
    def for_failure(
        cls, driver: OracleDriver, initial: ReferenceState, kind: FailureKind
    ) -> "SequenceMinimizer":
        """Minimizer that keeps a candidate when it fails with the same kind."""

        async def reproduces(candidate: list[Command]) -> bool:
            failure = await replay(driver, initial, candidate)
            return failure is not None and failure.kind == kind

        return cls(reproduces)

    async def _check(self, candidate: list[Command]) -> bool:
        if not candidate:
            return False
        self.attempts += 1
        return await self._reproduces(candidate)

    async def minimize(self, commands: Sequence[Command]) -> list[Command]:
        current = list(commands)
        if len(current) <= 1:
            return current

        chunk_size = len(current) // 2
        while chunk_size >= 1:
            i = 0
            while i < len(current):
                candidate = current[:i] + current[i + chunk_size:]
                if await self._check(candidate):
                    current = candidate
                else:
                    i += chunk_size
            chunk_size //= 2

        logger.info("Minimized sequence: %d → %d commands (%d replays)", len(commands), len(current), self.attempts)
        return current
