"""Error taxonomy of the oracle.

Expected rejections never leave the driver. Everything else is fatal to a
run and is raised as a :class:`CommandFailure` carrying the command, the
Reference State snapshot taken right before it, and the underlying detail:

    UnexpectedRejection     — model predicted acceptance, ledger rejected
    UnexpectedSuccess       — model predicted rejection, ledger accepted
    PostconditionMismatch   — ledger accepted but post-call state diverges
    InvariantViolation      — an accepted transition broke a model invariant
    UnresolvedBranch        — the model reached a branch it refuses to guess
"""

from __future__ import annotations

from typing import Any

from crowdsale_oracle.core.types import FailureKind, FailureReport


class OracleError(Exception):
    """Base class for every error raised by the oracle."""


class ConfigurationError(OracleError):
    """The ledger or the settings cannot be turned into a Reference State."""


class CommandFailure(OracleError):
    """A command outcome contradicted the reference model."""

    kind: FailureKind = FailureKind.UNEXPECTED_REJECTION

    def __init__(
        self,
        message: str,
        command: Any,
        state: Any,
        detail: str = "",
        error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.command = command
        self.state = state
        self.detail = detail
        self.error = error
        self.sequence: list[Any] = []
        self.step: int | None = None

    def __str__(self) -> str:
        parts = [f"{self.kind.value}: {self.message}"]
        if self.command is not None:
            parts.append(f"command={self.command!r}")
        if self.detail:
            parts.append(self.detail)
        return " | ".join(parts)

    def to_report(self) -> FailureReport:
        return FailureReport(
            kind=self.kind,
            message=self.message,
            command=_as_dict(self.command),
            state=_as_dict(self.state),
            detail=self.detail or (repr(self.error) if self.error else ""),
            sequence=[_as_dict(c) for c in self.sequence],
            step=self.step,
        )


class UnexpectedRejection(CommandFailure):
    kind = FailureKind.UNEXPECTED_REJECTION


class UnexpectedSuccess(CommandFailure):
    kind = FailureKind.UNEXPECTED_SUCCESS


class PostconditionMismatch(CommandFailure):
    kind = FailureKind.POSTCONDITION_MISMATCH


class InvariantViolation(CommandFailure):
    kind = FailureKind.INVARIANT_VIOLATION


class UnresolvedBranch(CommandFailure):
    kind = FailureKind.UNRESOLVED_BRANCH


class UnresolvedBranchError(NotImplementedError):
    """Raised by a transition that reaches a branch whose ledger behaviour is undecided.

    The driver re-raises it as :class:`UnresolvedBranch` so the run is
    flagged instead of the model silently guessing.
    """


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return {"repr": repr(obj)}
