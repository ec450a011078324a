"""Custom exceptions for quillguard.

Rejections issued by the gates are returned as ``GuardResponse`` values, not
raised. Exceptions are reserved for configuration problems.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class QuillGuardException(Exception):
    """Base class for quillguard exceptions."""

    message: str
    http_status: int = 500
    details: dict[str, object] | None = None

    def __str__(self) -> str:  # pragma: no cover - dataclass str wrapper
        return self.message


@dataclass
class BadPolicy(QuillGuardException):
    """Raised when a policy file cannot be read, parsed or validated."""

    http_status: int = 422
