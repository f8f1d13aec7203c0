from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class FlagError(Exception):
    code: str
    message: str
    status_code: int
    field: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.field:
            payload["field"] = self.field
        return payload


class FlagNotFound(FlagError):
    def __init__(self, message: str):
        super().__init__(code="not_found", message=message, status_code=404)


class InvalidArgument(FlagError):
    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(
            code="invalid_argument",
            message=message,
            status_code=400,
            field=field,
        )


class Conflict(FlagError):
    def __init__(self, message: str):
        super().__init__(code="conflict", message=message, status_code=409)
