"""Shared enums and report schemas used across the oracle."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ────────────────────────────────────────────────────────────────────


class CommandKind(str, enum.Enum):
    """Kinds of commands the oracle can issue against the crowdsale."""

    WAIT_TIME = "wait_time"
    SET_WALLET = "set_wallet"
    SET_TOKEN = "set_token"
    CLAIM_VAULT_FUNDS = "claim_vault_funds"
    REFUND_ALL = "refund_all"
    BUY_TOKENS = "buy_tokens"
    VALIDATE_PURCHASE = "validate_purchase"
    REJECT_PURCHASE = "reject_purchase"
    PAUSE_CROWDSALE = "pause_crowdsale"
    PAUSE_TOKEN = "pause_token"
    FINALIZE_CROWDSALE = "finalize_crowdsale"
    BURN_TOKENS = "burn_tokens"


class KYCStatus(str, enum.Enum):
    """Review status of an investor."""

    UNSET = "unset"
    APPROVED = "approved"
    REJECTED = "rejected"


class RejectionKind(str, enum.Enum):
    """Failure class of a rejected ledger call."""

    REVERT = "revert"
    INVALID_OPCODE = "invalid_opcode"
    SIGNER_LOCKED = "signer_locked"
    OTHER = "other"


class FailureKind(str, enum.Enum):
    """Why a run was aborted."""

    UNEXPECTED_REJECTION = "unexpected_rejection"
    UNEXPECTED_SUCCESS = "unexpected_success"
    POSTCONDITION_MISMATCH = "postcondition_mismatch"
    INVARIANT_VIOLATION = "invariant_violation"
    UNRESOLVED_BRANCH = "unresolved_branch"


class CampaignStatus(str, enum.Enum):
    """Final status of a campaign."""

    PASSED = "passed"
    FAILED = "failed"


# ── Report Schemas ───────────────────────────────────────────────────────────


class FailureReport(BaseModel):
    """Diagnostic unit produced when a run aborts."""

    kind: FailureKind
    message: str
    command: dict[str, Any]
    state: dict[str, Any] = Field(default_factory=dict)
    detail: str = ""
    sequence: list[dict[str, Any]] = Field(default_factory=list)
    step: int | None = None


class CampaignReport(BaseModel):
    """Summary of a stateful campaign."""

    campaign_id: str
    status: CampaignStatus = CampaignStatus.PASSED
    mode: str = "ledger"
    sequences_executed: int = 0
    commands_executed: int = 0
    commands_accepted: int = 0
    commands_rejected: int = 0
    accepted_by_kind: dict[str, int] = Field(default_factory=dict)
    rejected_by_kind: dict[str, int] = Field(default_factory=dict)
    failure: FailureReport | None = None
    failure_file: str | None = None
    duration_seconds: float = 0.0
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def passed(self) -> bool:
        return self.status == CampaignStatus.PASSED
