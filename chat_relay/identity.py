"""Resolve the caller's identity from the authenticated front door."""

from __future__ import annotations

from typing import Mapping, Optional, Protocol


class IdentityResolver(Protocol):
    def resolve(self, headers: Mapping[str, str]) -> Optional[str]:
        ...


class HeaderIdentityResolver:
    """Trust an owner id header injected by the upstream authentication proxy."""

    def __init__(self, header_name: str = "X-User-Id") -> None:
        self.header_name = header_name

    def resolve(self, headers: Mapping[str, str]) -> Optional[str]:
        value = headers.get(self.header_name)
        if value is None:
            value = headers.get(self.header_name.lower())
        if not value or not value.strip():
            return None
        return value.strip()
