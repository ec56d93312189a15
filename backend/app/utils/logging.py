"""Structured logging for request-scope transactions."""

import logging
from typing import Any

from backend.app.db.context import RequestScope

logger = logging.getLogger(__name__)


class ScopeLifecycleLogger:
    """Structured logger for request-scope lifecycle events."""

    def _base(self, scope: RequestScope) -> dict[str, Any]:
        return {
            "scope_id": str(scope.scope_id),
            "subject_id": scope.subject_id,
        }

    def log_bound(self, scope: RequestScope) -> None:
        """Log a transaction opened and bound to a subject."""
        log_data = self._base(scope)
        log_data["state"] = "bound"
        logger.debug("Request scope bound", extra={"structured": log_data})

    def log_finalized(self, scope: RequestScope, outcome: str, duration_ms: float) -> None:
        """Log a scope reaching the released state."""
        log_data = self._base(scope)
        log_data.update(
            {
                "state": "released",
                "outcome": outcome,
                "duration_ms": round(duration_ms, 2),
            }
        )

        if outcome == "success":
            logger.info("Request scope committed", extra={"structured": log_data})
        else:
            logger.warning("Request scope rolled back", extra={"structured": log_data})

    def log_duplicate_finalize(self, scope: RequestScope, state: str) -> None:
        """Log a finalize call absorbed because the scope already left ``bound``."""
        log_data = self._base(scope)
        log_data["state"] = state
        logger.debug("Duplicate finalize ignored", extra={"structured": log_data})

    def log_bind_failure(self, subject_id: str, error_reason: str) -> None:
        """Log a failed security-context bind."""
        log_data = {"subject_id": subject_id, "error_reason": error_reason}
        logger.error("Request scope bind failed", extra={"structured": log_data})

    def log_commit_failure(self, scope: RequestScope, error_reason: str) -> None:
        """Log a commit that raised; the transaction is rolled back."""
        log_data = self._base(scope)
        log_data["error_reason"] = error_reason
        logger.error("Request scope commit failed", extra={"structured": log_data})

    def log_discard_failure(self, subject_id: str, error_reason: str) -> None:
        """Log a rollback that failed while discarding an unbound connection."""
        log_data = {"subject_id": subject_id, "error_reason": error_reason}
        logger.error("Discarding unbound connection failed", extra={"structured": log_data})

    def log_detached_finalize_failure(self, scope: RequestScope, error_reason: str) -> None:
        """Log a finalize error surfaced after its request was cancelled."""
        log_data = self._base(scope)
        log_data["error_reason"] = error_reason
        logger.error(
            "Request scope finalize failed after cancellation", extra={"structured": log_data}
        )
