from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import BaseModel, field_validator


def _header_pairs(value: Any) -> Any:
    if isinstance(value, Mapping):
        return list(value.items())
    return value


class AgentRequest(BaseModel):
    """A request delivered to the agent by its host.

    Headers are kept as ordered name/value pairs so repeated headers reach
    the origin as sent.
    """

    url: str
    method: str = "GET"
    headers: list[tuple[str, str]] = []
    body: bytes = b""

    @field_validator("headers", mode="before")
    @classmethod
    def _coerce_headers(cls, value: Any) -> Any:
        return _header_pairs(value)


class CachedResponse(BaseModel):
    """Response bytes plus headers, as stored in a cache namespace."""

    url: str
    status: int
    headers: list[tuple[str, str]] = []  # Repeated names (set-cookie) stay separate
    body: bytes = b""
    stored_at: datetime | None = None  # Set when read back from storage

    @field_validator("headers", mode="before")
    @classmethod
    def _coerce_headers(cls, value: Any) -> Any:
        return _header_pairs(value)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> str | None:
        """First value of header ``name`` (case-insensitive), or ``None``."""
        name = name.lower()
        return next((value for key, value in self.headers if key.lower() == name), None)

    def text(self) -> str:
        return self.body.decode("utf-8")
