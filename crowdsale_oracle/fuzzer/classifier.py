"""Exception classifier — decides whether a ledger rejection was expected."""

from __future__ import annotations

import logging
from typing import Any

from web3.exceptions import ContractLogicError

from crowdsale_oracle.core.errors import UnexpectedRejection
from crowdsale_oracle.core.types import RejectionKind
from crowdsale_oracle.ledger.interface import LedgerCallError, kind_from_message

logger = logging.getLogger(__name__)


def rejection_kind(error: BaseException) -> RejectionKind:
    """Map any error raised by an executor to a :class:`RejectionKind`."""
    if isinstance(error, LedgerCallError):
        return error.kind
    default = RejectionKind.REVERT if isinstance(error, ContractLogicError) else RejectionKind.OTHER
    return kind_from_message(str(error), default)


class ExceptionClassifier:
    """Separates expected rejections from failures of the ledger under test."""

    @staticmethod
    def is_expected(error: BaseException, should_reject: bool, has_zero_address: bool) -> bool:
        if not should_reject:
            return False
        kind = rejection_kind(error)
        if kind in (RejectionKind.REVERT, RejectionKind.INVALID_OPCODE):
            return True
        # the node refuses to sign for the zero address before any contract code runs
        return kind is RejectionKind.SIGNER_LOCKED and has_zero_address

    def adjudicate(
        self,
        error: BaseException,
        should_reject: bool,
        has_zero_address: bool,
        state: Any = None,
        command: Any = None,
    ) -> RejectionKind:
        """Return the rejection kind of an expected error, raise otherwise."""
        kind = rejection_kind(error)
        if self.is_expected(error, should_reject, has_zero_address):
            return kind

        if should_reject:
            message = f"rejection of kind {kind.value} was not expected"
        else:
            message = "model predicted acceptance but the ledger rejected the call"
        logger.debug("Unexpected %s from %r: %s", kind.value, command, error)
        raise UnexpectedRejection(
            message,
            command=command,
            state=state,
            detail=f"{type(error).__name__}: {error}",
            error=error,
        ) from error
