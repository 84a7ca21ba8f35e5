"""Error taxonomy shared by the attempt and competition services.

Each error carries a stable ``category`` and HTTP ``status_code`` so the API
layer can translate it without knowing which service raised it:

- ``NotFoundError``: the referenced record does not exist.
- ``ForbiddenError``: the actor does not own the resource or lacks the role.
- ``ConflictError``: the record is not in the state the operation needs.
- ``ValidationError``: the input itself is malformed.
"""

from __future__ import annotations


class ArenaError(Exception):
    """Base class for errors raised to callers of the core services."""

    category: str = "error"
    status_code: int = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFoundError(ArenaError, LookupError):
    category = "not_found"
    status_code = 404


class ForbiddenError(ArenaError, PermissionError):
    category = "forbidden"
    status_code = 403


class ConflictError(ArenaError, RuntimeError):
    category = "conflict"
    status_code = 409


class ValidationError(ArenaError, ValueError):
    category = "validation_error"
    status_code = 422


class ConcurrentUpdateError(ConflictError):
    """A concurrent transaction touched the same rows first."""
