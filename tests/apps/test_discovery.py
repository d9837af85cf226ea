"""Tests for the app discovery coordinator."""

from __future__ import annotations

import importlib.metadata as metadata
from pathlib import Path

import pytest

from examples.apps.hello_world import HelloWorldApp
from hubrunner.apps import AppContext, AppDiscovery, AppError
from hubrunner.storage import JsonStorageRepository

ENTRY_POINT = metadata.EntryPoint(
    name="hello_world",
    value="examples.apps.hello_world:HelloWorldApp",
    group="hubrunner.apps",
)

FOLDER_APP = '''
class PresenceApp:
    app_id = "presence"
    version = "1.0.0"
    min_core = "0.1.0"
    default_config = {"away_delay": 300, "Zone": "home"}

    def __init__(self):
        self.ctx = None

    async def initialize(self, ctx):
        self.ctx = ctx

    async def on_shutdown(self):
        self.ctx.config.set("shut_down", True)


class NotAnApp:
    pass
'''

BROKEN_APP = '''
class BrokenApp:
    app_id = "broken"
    version = "1.0.0"
    min_core = "0.1.0"

    async def initialize(self, ctx):
        raise RuntimeError("boom")

    async def on_shutdown(self):
        pass
'''


NAMED_APP = '''
class NamedApp:
    app_id = "{app_id}"
    version = "1.0.0"
    min_core = "0.1.0"

    async def initialize(self, ctx):
        pass

    async def on_shutdown(self):
        pass
'''


class _ExplodingApp:
    app_id = "exploding"

    def __init__(self) -> None:
        raise RuntimeError("cannot build")

    async def initialize(self, ctx: AppContext) -> None:
        return None


class _NamelessApp:
    version = "1.0.0"

    async def initialize(self, ctx: AppContext) -> None:
        return None


class _HubStub:
    connected = True

    async def run(self, target, stopping):  # type: ignore[no-untyped-def]
        return None

    async def stop(self) -> None:
        return None


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def no_entry_points(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(metadata, "entry_points", lambda: metadata.EntryPoints(()))


@pytest.fixture
def app_folder(tmp_path: Path) -> Path:
    folder = tmp_path / "apps"
    folder.mkdir()
    return folder


def test_discover_finds_folder_apps_with_config(app_folder: Path) -> None:
    (app_folder / "presence.py").write_text(FOLDER_APP)
    (app_folder / "presence.toml").write_text('[presence]\nAway_Delay = 60\n')
    (app_folder / "_helpers.py").write_text("raise RuntimeError('never imported')\n")
    discovery = AppDiscovery(app_folder)

    discovered = discovery.discover()

    assert [app.app_id for app in discovered] == ["presence"]
    config = discovered[0].config
    assert config.get("away_delay") == 60
    assert config.get("zone") == "home"
    assert config.get("unknown") is None


def test_entry_point_app_is_discovered(app_folder: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(metadata, "entry_points", lambda: metadata.EntryPoints((ENTRY_POINT,)))
    discovery = AppDiscovery(app_folder)

    discovered = discovery.discover()

    assert discovered[0].app_id == HelloWorldApp.app_id
    assert discovered[0].version == HelloWorldApp.version
    assert isinstance(discovered[0].descriptor, HelloWorldApp)


def test_builtin_app_is_discovered(app_folder: Path) -> None:
    discovery = AppDiscovery(app_folder, builtin_apps=[HelloWorldApp])

    discovered = discovery.discover()

    assert discovered[0].app_id == "hello_world"
    assert discovered[0].config.get("GREETING") == "Hello"


@pytest.mark.anyio
async def test_enable_initializes_apps_with_context(tmp_path: Path, app_folder: Path) -> None:
    storage = JsonStorageRepository(tmp_path / ".storage")
    hub = _HubStub()
    app = HelloWorldApp()

    async with AppDiscovery(app_folder, storage=storage, builtin_apps=[app]) as discovery:
        started = await discovery.enable(hub, discover_on_startup=True)

        assert [item.app_id for item in started] == ["hello_world"]
        ctx = app.last_context
        assert isinstance(ctx, AppContext)
        assert ctx.hub is hub
        assert ctx.storage is storage
        assert app.greeting == "Hello, world!"
        saved = await storage.load("hello_world")
        assert saved is not None and saved.get("last_greeting") == "Hello, world!"

    assert app.shutdown_called
    assert discovery.running == ()


@pytest.mark.anyio
async def test_enable_without_startup_discovery_starts_nothing(app_folder: Path) -> None:
    app = HelloWorldApp()
    discovery = AppDiscovery(app_folder, builtin_apps=[app])

    started = await discovery.enable(_HubStub(), discover_on_startup=False)

    assert started == []
    assert app.initialize_count == 0


@pytest.mark.anyio
async def test_incompatible_app_is_skipped(app_folder: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(HelloWorldApp, "min_core", "9.9.9")
    app = HelloWorldApp()
    discovery = AppDiscovery(app_folder, core_version="0.1.0", builtin_apps=[app])

    started = await discovery.enable(_HubStub())

    assert started == []
    assert app.initialize_count == 0


@pytest.mark.anyio
async def test_disabled_app_is_skipped(app_folder: Path) -> None:
    (app_folder / "presence.py").write_text(FOLDER_APP)
    (app_folder / "presence.toml").write_text("[presence]\nenabled = false\n")
    discovery = AppDiscovery(app_folder)

    started = await discovery.enable(_HubStub())

    assert started == []


@pytest.mark.anyio
async def test_failing_app_does_not_block_others(app_folder: Path) -> None:
    (app_folder / "broken.py").write_text(BROKEN_APP)
    (app_folder / "presence.py").write_text(FOLDER_APP)
    discovery = AppDiscovery(app_folder)

    with pytest.raises(AppError, match="broken"):
        await discovery.enable(_HubStub())

    assert [app.app_id for app in discovery.running] == ["presence"]
    await discovery.shutdown()


@pytest.mark.anyio
async def test_module_import_error_is_reported(app_folder: Path) -> None:
    (app_folder / "syntax.py").write_text("def broken(:\n")
    discovery = AppDiscovery(app_folder)

    with pytest.raises(AppError, match="syntax.py"):
        await discovery.enable(_HubStub())


@pytest.mark.anyio
async def test_invalid_enabled_flag_does_not_block_others(app_folder: Path) -> None:
    (app_folder / "a_bad.py").write_text(NAMED_APP.format(app_id="bad"))
    (app_folder / "a_bad.toml").write_text('[bad]\nenabled = "no"\n')
    (app_folder / "b_good.py").write_text(NAMED_APP.format(app_id="good"))
    discovery = AppDiscovery(app_folder)

    with pytest.raises(AppError, match="bad"):
        await discovery.enable(_HubStub())

    assert [app.app_id for app in discovery.running] == ["good"]
    await discovery.shutdown()


def test_malformed_builtin_apps_are_collected(app_folder: Path) -> None:
    discovery = AppDiscovery(app_folder, builtin_apps=[_ExplodingApp, _NamelessApp(), HelloWorldApp])

    discovered = discovery.discover()

    assert [app.app_id for app in discovered] == ["hello_world"]


@pytest.mark.anyio
async def test_malformed_builtin_apps_do_not_block_others(app_folder: Path) -> None:
    app = HelloWorldApp()
    discovery = AppDiscovery(app_folder, builtin_apps=[_ExplodingApp, _NamelessApp(), app])

    with pytest.raises(AppError, match="_ExplodingApp, _NamelessApp"):
        await discovery.enable(_HubStub())

    assert [item.app_id for item in discovery.running] == ["hello_world"]
    assert app.initialize_count == 1
    await discovery.shutdown()


@pytest.mark.anyio
async def test_entry_point_without_app_id_is_reported(app_folder: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    broken = metadata.EntryPoint(name="nameless", value=f"{__name__}:_NamelessApp", group="hubrunner.apps")
    monkeypatch.setattr(metadata, "entry_points", lambda: metadata.EntryPoints((broken, ENTRY_POINT)))
    discovery = AppDiscovery(app_folder)

    with pytest.raises(AppError, match="nameless"):
        await discovery.enable(_HubStub())

    assert [item.app_id for item in discovery.running] == ["hello_world"]
    await discovery.shutdown()
