from __future__ import annotations

from typing import Optional


class CatalogError(Exception):
    """Base class for catalog, codec and storage failures."""


class DecodeError(CatalogError):
    """The input could not be interpreted as an image."""


class EncodeError(CatalogError):
    """Neither the preferred nor the fallback format could be produced."""


class SizeExceededError(CatalogError):
    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(
            f"Image too large: {size / 1024 / 1024:.1f}MB. Max: {limit / 1024 / 1024:.0f}MB"
        )


class StoreUnavailableError(CatalogError):
    """Transport or service failure talking to the remote service."""


class DuplicateNameError(CatalogError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__("Same product already exists")


class RemoteValidationError(CatalogError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class NotFound(CatalogError):
    """A write or delete targeted an identifier the remote does not hold."""
