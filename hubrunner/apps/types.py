"""App contract primitives shared between the discovery coordinator and apps."""

from __future__ import annotations

import logging
from typing import NamedTuple, Protocol

from hubrunner.hub import HubClient
from hubrunner.record import DynamicRecord
from hubrunner.storage import StorageRepository


class AppContext(NamedTuple):
    """Runtime dependencies handed to an app on initialization."""

    hub: HubClient | None = None
    storage: StorageRepository | None = None
    config: DynamicRecord | None = None
    logger: logging.Logger | None = None


class AppDescriptor(Protocol):
    """Contract implemented by user apps.

    ``default_config`` is optional; when present its keys fill in whatever
    the app's config file leaves out.
    """

    app_id: str
    version: str
    min_core: str

    async def initialize(self, ctx: AppContext) -> None: ...

    async def on_shutdown(self) -> None: ...


class AppError(RuntimeError):
    """Base error for app discovery failures."""


class AppCompatibilityError(AppError):
    """Raised when an app does not satisfy the minimum core version."""


__all__ = [
    "AppCompatibilityError",
    "AppContext",
    "AppDescriptor",
    "AppError",
]
