"""Error taxonomy for the cap-table mirror."""

from __future__ import annotations

from typing import Any, Dict, Optional


class CapTableMirrorError(Exception):
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            out["details"] = self.details
        return out


class LedgerConnectionError(CapTableMirrorError, ConnectionError):
    """Transport or liveness failure talking to the ledger RPC."""

    code = "LEDGER_CONNECTION_ERROR"


class DecodeError(CapTableMirrorError):
    """Malformed log data. Always skipped by the ingestion path."""

    code = "DECODE_ERROR"


class NotFoundError(CapTableMirrorError):
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource", identifier: Any = None) -> None:
        message = f"{resource} not found" if identifier is None else f"{resource} not found: {identifier}"
        super().__init__(message, details={"resource": resource, "identifier": identifier})


class ConflictError(CapTableMirrorError):
    code = "CONFLICT"


class ValidationError(CapTableMirrorError):
    code = "VALIDATION_ERROR"


class PartialFailureError(CapTableMirrorError):
    """A multi-step corporate action failed after some steps were committed."""

    code = "PARTIAL_FAILURE"

    def __init__(
        self,
        message: str,
        *,
        step: str,
        new_mint: Optional[str] = None,
        holders_migrated: int = 0,
        action_id: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            details={
                "step": step,
                "new_mint": new_mint,
                "holders_migrated": holders_migrated,
                "action_id": action_id,
            },
        )
        self.step = step
        self.new_mint = new_mint
        self.holders_migrated = holders_migrated
        self.action_id = action_id
