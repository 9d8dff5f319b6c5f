"""Error types raised by the domain layer and rendered by the API."""

from __future__ import annotations

from typing import Any


class LookError(RuntimeError):
    """Base error carrying a short machine code and an HTTP status."""

    status_code = 500

    def __init__(self, code: str, detail: str | None = None, *, status_code: int | None = None) -> None:
        super().__init__(detail or code)
        self.code = code
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": False, "error": self.code}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class ValidationFailed(LookError):
    status_code = 400


class NotAllowed(LookError):
    status_code = 403


class NotFound(LookError):
    status_code = 404


class Conflict(LookError):
    status_code = 409


class UpstreamError(LookError):
    """A database or third-party call failed."""


class CommitError(UpstreamError):
    pass
