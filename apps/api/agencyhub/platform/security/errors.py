from __future__ import annotations


class AuthorizationError(Exception):
    """Base class for authorization-layer failures that are not ordinary denials."""


class GuardInputError(AuthorizationError):
    """Raised when a guard receives a resource it cannot interpret at all.

    This signals a programming error in the caller (for example passing ``None`` after
    a failed lookup) and is never used to express an access decision.
    """

    def __init__(self, guard: str, detail: str) -> None:
        self.guard = guard
        self.detail = detail
        super().__init__(f"{guard}: {detail}")
