"""Record engine error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class RecordError(Exception):
    code: str
    message: str
    path: str | None = None
    detail: dict | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base

    def to_issue(self) -> dict:
        return {"code": self.code, "message": self.message, "path": self.path, "detail": self.detail}


class ValidationError(RecordError):
    """Bad or missing field value; ``message`` names the field label."""

    def __init__(self, code: str, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__(code, message, path, detail)


class MissingField(ValidationError):
    def __init__(self, label: str, path: str | None = None) -> None:
        super().__init__("MISSING_FIELD", f"field '{label}' is required", path)


class InvalidType(ValidationError):
    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("INVALID_TYPE", message, path, detail)


class InvalidFormat(ValidationError):
    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("INVALID_FORMAT", message, path, detail)


class InvalidRange(ValidationError):
    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("INVALID_RANGE", message, path, detail)


class InvalidOption(ValidationError):
    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("INVALID_OPTION", message, path, detail)


class InvalidOperator(ValidationError):
    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("INVALID_OPERATOR", message, path, detail)


class UnknownField(ValidationError):
    def __init__(self, name: str, path: str | None = None) -> None:
        super().__init__("UNKNOWN_FIELD", f"unknown field '{name}'", path or name)


class PermissionDenied(RecordError):
    def __init__(self, message: str = "permission denied", path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("PERMISSION_DENIED", message, path, detail)


class FieldNotWritable(RecordError):
    def __init__(self, label: str, path: str | None = None) -> None:
        super().__init__("FIELD_NOT_WRITABLE", f"field '{label}' is not writable", path)


class RecordLocked(RecordError):
    def __init__(self, record_id: str | None = None) -> None:
        super().__init__("RECORD_LOCKED", "record is locked pending approval", "id", {"record_id": record_id})


class ReferenceNotFound(RecordError):
    def __init__(self, label: str, ref_id: Any, path: str | None = None) -> None:
        super().__init__(
            "REFERENCE_NOT_FOUND",
            f"referenced record for field '{label}' not found",
            path,
            {"id": ref_id},
        )


class NotFound(RecordError):
    def __init__(self, message: str = "not found", path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("NOT_FOUND", message, path, detail)


class InternalError(RecordError):
    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("INTERNAL_ERROR", message, path, detail)


class DeadlineExceeded(InternalError):
    def __init__(self, message: str = "request deadline exceeded", path: str | None = None) -> None:
        RecordError.__init__(self, "DEADLINE_EXCEEDED", message, path, None)


HTTP_STATUS = {
    "MISSING_FIELD": 400,
    "INVALID_TYPE": 400,
    "INVALID_FORMAT": 400,
    "INVALID_RANGE": 400,
    "INVALID_OPTION": 400,
    "INVALID_OPERATOR": 400,
    "UNKNOWN_FIELD": 400,
    "PERMISSION_DENIED": 403,
    "FIELD_NOT_WRITABLE": 403,
    "NOT_FOUND": 404,
    "REFERENCE_NOT_FOUND": 400,
    "RECORD_LOCKED": 409,
    "INTERNAL_ERROR": 500,
    "DEADLINE_EXCEEDED": 504,
}


def http_status(error: RecordError) -> int:
    return HTTP_STATUS.get(error.code, 500)
