"""Allow/block results shared by every checker."""

from __future__ import annotations

from dataclasses import dataclass


class PolicyViolation(Exception):
    """Raised inside a checker when an action is blocked by policy."""

    def __init__(self, message: str, code: str = "blocked"):
        super().__init__(message)
        self.message = message
        self.code = code


@dataclass(frozen=True)
class Decision:
    allowed: bool
    message: str | None = None
    code: str = "allowed"
    checker: str = ""

    @classmethod
    def allow(cls, checker: str = "", message: str | None = None) -> Decision:
        return cls(True, message, "allowed", checker)

    @classmethod
    def block(cls, message: str, code: str, checker: str = "") -> Decision:
        return cls(False, message, code, checker)

    @classmethod
    def from_violation(cls, exc: PolicyViolation, checker: str = "") -> Decision:
        return cls(False, exc.message, exc.code, checker)
