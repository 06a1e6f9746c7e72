"""
Metering exceptions.

Expected denials and storage failures surfaced to route handlers.
"""

from typing import Any, Dict


class MeteringError(Exception):
    """Base class for all metering errors."""


class AccountNotFound(MeteringError):
    """Raised when the identity layer hands us an unresolvable account id."""
    def __init__(self, account_id):
        super().__init__(f"Unknown account: {account_id!r}")
        self.account_id = account_id


class StorageUnavailable(MeteringError):
    """Raised when a counter or ledger backend cannot be reached."""
    def __init__(self, message: str, operation: str = ""):
        super().__init__(message)
        self.operation = operation


class AdminRequired(MeteringError):
    """Raised when a non-admin asks for an admin-only report."""


class EntitlementDenied(MeteringError):
    """Raised when a request is refused for quota or cost ceiling reasons.

    Wraps the denied Decision so callers can build a 429 payload.
    """
    def __init__(self, decision):
        reason = decision.reason.value if decision.reason else "denied"
        super().__init__(
            f"{reason}: used {decision.used} of {decision.limit}"
        )
        self.decision = decision

    @property
    def reason(self):
        return self.decision.reason

    def to_dict(self) -> Dict[str, Any]:
        """Machine-readable payload for the client."""
        return self.decision.to_dict()
