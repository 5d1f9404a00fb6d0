"""
Uniform response envelope.

Every response, success or failure, has the shape::

    {"success": true,  "data": ...,                         "timestamp": "..."}
    {"success": false, "error": {"kind": ..., "message": ...}, "timestamp": "..."}
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


def utc_timestamp() -> str:
    """Current time as an ISO-8601 UTC string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ErrorBody(BaseModel):
    kind: str
    message: str


class ResponseEnvelope(BaseModel):
    """Response envelope returned by every gateway route."""

    success: bool
    data: Any = None
    error: ErrorBody | None = None
    timestamp: str = Field(default_factory=utc_timestamp)

    @classmethod
    def ok(cls, data: Any = None) -> "ResponseEnvelope":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind: str, message: str) -> "ResponseEnvelope":
        return cls(success=False, error=ErrorBody(kind=kind, message=message))

    def render(self) -> dict[str, Any]:
        """JSON body: ``data`` on success, ``error`` on failure."""
        body: dict[str, Any] = {"success": self.success}
        if self.success:
            body["data"] = self.data
        else:
            body["error"] = self.error.model_dump() if self.error else None
        body["timestamp"] = self.timestamp
        return body
