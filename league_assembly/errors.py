"""
Error taxonomy for League Assembly operations.

Every business-rule violation raised by the governance and session layers is
one of these. The HTTP boundary converts them to ``{"error": message}`` with
the matching status code; nothing else is allowed to escape as an
unstructured failure.
"""

from __future__ import annotations


class AssemblyError(Exception):
    """Base class for all structured assembly errors."""

    status: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, object]:
        return {"error": self.message}


class UnauthorizedError(AssemblyError):
    """No valid acting identity."""

    status = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class ForbiddenError(AssemblyError):
    """Identity present but lacking the required capability."""

    status = 403


class NotFoundError(AssemblyError):
    """Referenced amendment, motion, thread, article or post does not exist."""

    status = 404


class ConflictError(AssemblyError):
    """Operation invalid for the current state. Re-fetch before retrying."""

    status = 409


class QuorumUnmetError(ConflictError):
    """Too few active countries to satisfy a privileged operation's quorum."""


class ValidationError(AssemblyError):
    """Malformed or incomplete input, with field-level detail."""

    status = 400

    def __init__(self, message: str, fields: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.fields = dict(fields or {})

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        if self.fields:
            payload["fields"] = self.fields
        return payload
