"""Stateful campaign — random command sequences against a persistent ledger.

Architecture
------------
::

    StatefulCampaign
      │
      ├── CampaignConfig     — example count, sequence length, seed, output
      ├── sequence_strategy  — hypothesis strategy over the command catalog
      ├── OracleDriver       — runs each sequence on a fresh chain snapshot
      └── CampaignReport     — counters plus the minimal failing sequence

Hypothesis drives generation and shrinking: when a sequence fails, it is
shrunk to a minimal reproducer (shorter sequences, smaller amounts) and
the failure raised on the final replay is the one reported. Every
sequence starts from the same initial Reference State and the chain is
reverted to the pre-sequence snapshot afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

import hypothesis
from hypothesis import HealthCheck, given, settings

from crowdsale_oracle.core.config import Settings
from crowdsale_oracle.core.errors import CommandFailure
from crowdsale_oracle.core.logging import CampaignLogFilter
from crowdsale_oracle.core.types import CampaignReport, CampaignStatus
from crowdsale_oracle.fuzzer.catalog import sequence_strategy
from crowdsale_oracle.fuzzer.commands import Command
from crowdsale_oracle.fuzzer.driver import OracleDriver, RunStats
from crowdsale_oracle.fuzzer.generators import GeneratorContext
from crowdsale_oracle.fuzzer.replay import run_isolated, save_failure
from crowdsale_oracle.fuzzer.state import ReferenceState

logger = logging.getLogger(__name__)


@dataclass
class CampaignConfig:
    """Configuration for a stateful campaign."""
    max_examples: int = 50
    max_sequence_length: int = 40
    seed: int | None = None
    include_macro: bool = True
    failure_dir: str | None = None

    @classmethod
    def from_settings(cls, s: Settings) -> "CampaignConfig":
        return cls(
            max_examples=s.max_examples,
            max_sequence_length=s.max_sequence_length,
            seed=s.seed,
            failure_dir=s.failure_dir,
        )


class StatefulCampaign:
    """Runs hypothesis-generated command sequences through an :class:`OracleDriver`.

    ``initial_state`` is required in model-only mode (there is no ledger to
    read it from); otherwise it is read with :meth:`OracleDriver.setup`.
    Pass ``loop`` when the ledger connection is bound to an existing loop.
    """

    def __init__(
        self,
        driver: OracleDriver,
        config: CampaignConfig | None = None,
        initial_state: ReferenceState | None = None,
        account_count: int | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._driver = driver
        self._loop = loop
        self._config = config or CampaignConfig()
        self._initial = initial_state
        self._account_count = account_count
        self.campaign_id = uuid.uuid4().hex

    def run(self) -> CampaignReport:
        """Execute the campaign. Must not be called from a running event loop."""
        cfg = self._config
        report = CampaignReport(campaign_id=self.campaign_id, mode="model" if self._driver.model_only else "ledger")
        stats = RunStats()
        start_time = time.monotonic()

        log_filter = CampaignLogFilter(self.campaign_id)
        handlers = list(logging.getLogger().handlers)
        for handler in handlers:
            handler.addFilter(log_filter)

        loop = self._loop or asyncio.new_event_loop()
        try:
            initial = self._initial
            if initial is None:
                initial = loop.run_until_complete(self._driver.setup())
            account_count = self._account_count or (
                len(self._driver.accounts) if self._driver.accounts is not None else self._driver.settings.account_count
            )
            ctx = GeneratorContext.from_state(initial, account_count)

            logger.info(
                "Stateful campaign: %d sequences of up to %d steps (%s mode)",
                cfg.max_examples, cfg.max_sequence_length, report.mode,
            )

            @settings(
                max_examples=cfg.max_examples,
                deadline=None,
                database=None,
                print_blob=False,
                report_multiple_bugs=False,
                suppress_health_check=list(HealthCheck),
            )
            @given(sequence_strategy(ctx, cfg.max_sequence_length, cfg.include_macro))
            def check_sequence(commands: list[Command]) -> None:
                report.sequences_executed += 1
                _, run_stats = loop.run_until_complete(run_isolated(self._driver, initial, commands))
                stats.merge(run_stats)

            if cfg.seed is not None:
                check_sequence = hypothesis.seed(cfg.seed)(check_sequence)

            try:
                check_sequence()
            except CommandFailure as failure:
                self._record_failure(report, failure)
        finally:
            if self._loop is None:
                loop.close()
            for handler in handlers:
                handler.removeFilter(log_filter)

        report.commands_executed = stats.executed
        report.commands_accepted = stats.accepted
        report.commands_rejected = stats.rejected
        report.accepted_by_kind = dict(stats.accepted_by_kind)
        report.rejected_by_kind = dict(stats.rejected_by_kind)
        report.duration_seconds = time.monotonic() - start_time

        logger.info(
            "Stateful campaign complete: %s, %d sequences, %d commands (%d accepted, %d rejected) in %.1fs",
            report.status.value,
            report.sequences_executed,
            report.commands_executed,
            report.commands_accepted,
            report.commands_rejected,
            report.duration_seconds,
        )
        return report

    def _record_failure(self, report: CampaignReport, failure: CommandFailure) -> None:
        report.status = CampaignStatus.FAILED
        report.failure = failure.to_report()
        logger.error(
            "Minimal failing sequence has %d commands; last: %r",
            len(failure.sequence), failure.command,
            extra={"step": failure.step, "outcome": failure.kind.value},
        )
        if self._config.failure_dir:
            path = Path(self._config.failure_dir) / f"{self.campaign_id}.json"
            report.failure_file = str(save_failure(path, report.failure, self.campaign_id))
            logger.info("Failing sequence written to %s", report.failure_file)
