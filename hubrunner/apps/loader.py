"""App discovery coordinator."""

from __future__ import annotations

import importlib.metadata as metadata
import importlib.util
import inspect
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Iterable, Mapping, Sequence

import tomllib

from hubrunner import __version__ as CORE_VERSION
from hubrunner.hub import HubClient
from hubrunner.record import DynamicRecord, MissingKeyPolicy, TypeMismatchError
from hubrunner.storage import StorageRepository

from .types import AppCompatibilityError, AppContext, AppDescriptor, AppError

LOG = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "hubrunner.apps"
MODULE_NAMESPACE = "hubrunner_userapps"


def _parse_version(value: str) -> tuple[int, int, int]:
    """Parse a dotted string into a comparable tuple."""

    parts = value.split(".")
    ints: list[int] = []
    for chunk in parts[:3]:
        try:
            ints.append(int(chunk))
        except ValueError:
            ints.append(0)
    while len(ints) < 3:
        ints.append(0)
    return ints[0], ints[1], ints[2]


def _new_app_config(source: Mapping[str, Any] | None = None) -> DynamicRecord:
    return DynamicRecord(source, ignore_case=True, missing=MissingKeyPolicy.PERMISSIVE)


@dataclass(slots=True, frozen=True)
class DiscoveredApp:
    """An app class found in the app folder, an entry point, or the built-ins."""

    app_id: str
    version: str
    min_core: str
    source: str
    descriptor: AppDescriptor
    config: DynamicRecord = field(default_factory=_new_app_config)


class AppDiscovery:
    """Discovers apps and starts them against a connected hub.

    Use as an async context manager: leaving the block shuts down every app
    that was started.
    """

    def __init__(
        self,
        app_folder: Path,
        *,
        storage: StorageRepository | None = None,
        core_version: str = CORE_VERSION,
        entry_point_group: str = ENTRY_POINT_GROUP,
        builtin_apps: Iterable[AppDescriptor | type[AppDescriptor]] | None = None,
    ) -> None:
        self._app_folder = app_folder
        self._storage = storage
        self._core_version = core_version
        self._entry_point_group = entry_point_group
        self._builtin_apps = list(builtin_apps or [])
        self._discovered: list[DiscoveredApp] = []
        self._failures: list[tuple[str, BaseException]] = []
        self._running: dict[str, DiscoveredApp] = {}
        self._hub: HubClient | None = None

    async def __aenter__(self) -> AppDiscovery:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    @property
    def running(self) -> Sequence[DiscoveredApp]:
        """Apps initialized by the last `enable` call."""

        return tuple(self._running.values())

    def discover(self) -> list[DiscoveredApp]:
        """Enumerate apps from the app folder, entry points and built-ins."""

        self._failures = []
        discovered: dict[str, DiscoveredApp] = {}
        for app in self._iter_folder_apps():
            if app.app_id in discovered:
                LOG.warning("Duplicate app id, keeping the first", extra={"app": app.app_id, "source": app.source})
                continue
            discovered[app.app_id] = app
        for app in self._iter_entry_point_apps():
            discovered.setdefault(app.app_id, app)
        for app in self._iter_builtin_apps():
            discovered.setdefault(app.app_id, app)
        self._discovered = list(discovered.values())
        return self._discovered

    async def enable(self, hub: HubClient, *, discover_on_startup: bool = True) -> list[DiscoveredApp]:
        """Bind to ``hub`` and, if requested, discover and start apps now.

        Every app gets a chance to start; failures are collected and raised
        together as an `AppError` afterwards.
        """

        self._hub = hub
        if not discover_on_startup:
            return []

        self.discover()
        started: list[DiscoveredApp] = []
        for app in self._discovered:
            try:
                enabled = app.config.get_typed("enabled", True)
            except TypeMismatchError as exc:
                LOG.error("Invalid enabled flag in app config", extra={"app": app.app_id})
                self._failures.append((app.app_id, exc))
                continue
            if not enabled:
                LOG.info("Skipping disabled app", extra={"app": app.app_id})
                continue
            try:
                self._ensure_compatible(app)
            except AppCompatibilityError as exc:
                LOG.warning(
                    "Skipping app due to min_core mismatch",
                    extra={"app": app.app_id, "min_core": app.min_core},
                )
                LOG.debug(str(exc))
                continue
            ctx = AppContext(
                hub=hub,
                storage=self._storage,
                config=app.config,
                logger=logging.getLogger(f"{MODULE_NAMESPACE}.{app.app_id}"),
            )
            try:
                await app.descriptor.initialize(ctx)
            except Exception as exc:
                LOG.exception("App initialization failed", extra={"app": app.app_id})
                self._failures.append((app.app_id, exc))
                continue
            self._running[app.app_id] = app
            started.append(app)
            LOG.info("Started app", extra={"app": app.app_id, "version": app.version})

        if self._failures:
            names = ", ".join(name for name, _ in self._failures)
            raise AppError(f"Failed to load {len(self._failures)} app(s): {names}") from self._failures[0][1]
        return started

    async def shutdown(self) -> None:
        """Invoke app shutdown hooks."""

        running = list(self._running.values())
        self._running.clear()
        for app in reversed(running):
            try:
                await app.descriptor.on_shutdown()
            except Exception:
                LOG.exception("App shutdown failed", extra={"app": app.app_id})

    def _ensure_compatible(self, app: DiscoveredApp) -> None:
        core = _parse_version(self._core_version)
        minimum = _parse_version(app.min_core)
        if core < minimum:
            raise AppCompatibilityError(
                f"App '{app.app_id}' requires core>={app.min_core}, found {self._core_version}"
            )

    def _iter_folder_apps(self) -> list[DiscoveredApp]:
        if not self._app_folder.is_dir():
            return []
        apps: list[DiscoveredApp] = []
        for path in sorted(self._app_folder.glob("*.py")):
            if path.name.startswith("_"):
                continue
            try:
                module = self._import_module(path)
                tables = self._read_app_config(path.with_suffix(".toml"))
            except Exception as exc:
                LOG.exception("Failed to import app module", extra={"path": str(path)})
                self._failures.append((path.name, exc))
                continue
            for _, obj in inspect.getmembers(module, inspect.isclass):
                if obj.__module__ != module.__name__ or not _looks_like_app(obj):
                    continue
                try:
                    descriptor = obj()
                    apps.append(self._describe(descriptor, source=str(path), table=tables.get(descriptor.app_id)))
                except Exception as exc:
                    LOG.exception("Failed to construct app", extra={"path": str(path), "class": obj.__name__})
                    self._failures.append((obj.__name__, exc))
        return apps

    def _iter_entry_point_apps(self) -> list[DiscoveredApp]:
        eps = metadata.entry_points()
        group = eps.select(group=self._entry_point_group)
        apps: list[DiscoveredApp] = []
        for entry_point in sorted(group, key=lambda ep: ep.name):
            try:
                obj = entry_point.load()
                descriptor = obj() if inspect.isclass(obj) else obj
                apps.append(self._describe(descriptor, source=entry_point.value))
            except Exception as exc:
                LOG.exception("Failed to load app entry point", extra={"entry_point": entry_point.name})
                self._failures.append((entry_point.name, exc))
        return apps

    def _iter_builtin_apps(self) -> list[DiscoveredApp]:
        apps: list[DiscoveredApp] = []
        for app in self._builtin_apps:
            name = getattr(app, "__qualname__", None) or type(app).__qualname__
            try:
                descriptor = app() if inspect.isclass(app) else app
                source = f"{descriptor.__class__.__module__}:{descriptor.__class__.__qualname__}"
                apps.append(self._describe(descriptor, source=source))
            except Exception as exc:
                LOG.exception("Failed to construct built-in app", extra={"class": name})
                self._failures.append((name, exc))
        return apps

    def _describe(
        self,
        descriptor: AppDescriptor,
        *,
        source: str,
        table: Mapping[str, Any] | None = None,
    ) -> DiscoveredApp:
        app_id = getattr(descriptor, "app_id", None)
        if not isinstance(app_id, str) or not app_id:
            raise AppError(f"App from {source} does not define a string app_id")
        config = _new_app_config(table)
        config.merge(getattr(descriptor, "default_config", None) or {})
        return DiscoveredApp(
            app_id=app_id,
            version=getattr(descriptor, "version", "0.0.0"),
            min_core=getattr(descriptor, "min_core", "0.0.0"),
            source=source,
            descriptor=descriptor,
            config=config,
        )

    @staticmethod
    def _import_module(path: Path) -> ModuleType:
        name = f"{MODULE_NAMESPACE}.{path.stem}"
        spec = importlib.util.spec_from_file_location(name, path)
        if spec is None or spec.loader is None:
            raise AppError(f"Cannot import app module {path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(name, None)
            raise
        return module

    @staticmethod
    def _read_app_config(path: Path) -> dict[str, Mapping[str, Any]]:
        try:
            with path.open("rb") as handle:
                raw = tomllib.load(handle)
        except FileNotFoundError:
            return {}
        return {key: value for key, value in raw.items() if isinstance(value, dict)}


def _looks_like_app(obj: type) -> bool:
    return isinstance(getattr(obj, "app_id", None), str) and inspect.iscoroutinefunction(
        getattr(obj, "initialize", None)
    )


__all__ = ["AppDiscovery", "DiscoveredApp", "ENTRY_POINT_GROUP"]
