"""Uniform success and failure envelopes for API replies."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any


class Code(IntEnum):
    """Result codes carried by a response."""

    SUCCESS = 0
    FAIL_UNKNOWN = 2


@dataclass
class Response:
    """An API reply with a code, an optional message and optional data."""

    code: int
    message: str = ""
    data: Any = None

    def with_data(self, data: Any) -> "Response":
        """Attach a payload and return this response."""
        self.data = data
        return self

    def with_error(self, code: int, message: str) -> "Response":
        """Set the error code and message and return this response."""
        self.code = code
        self.message = message
        return self

    def to_dict(self) -> dict[str, Any]:
        """The response as a dict, leaving out an empty message and absent data."""
        result: dict[str, Any] = {"code": int(self.code)}
        if self.message:
            result["message"] = self.message
        if self.data is not None:
            result["data"] = self.data
        return result

    def to_json(self) -> str:
        """The response as compact JSON."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)


def success() -> Response:
    """A fresh success response."""
    return Response(code=Code.SUCCESS)


def fail() -> Response:
    """A fresh failure response with the generic message."""
    return Response(code=Code.FAIL_UNKNOWN, message="unknown error")