"""Sample app implementing the contract for manual and automated tests."""

from __future__ import annotations

from hubrunner.apps import AppContext, AppDescriptor


class HelloWorldApp(AppDescriptor):
    """Minimal app used to validate the discovery pipeline."""

    app_id = "hello_world"
    version = "0.0.1"
    min_core = "0.1.0"
    default_config = {"greeting": "Hello", "target": "world"}

    def __init__(self) -> None:
        self.shutdown_called = False
        self.initialize_count = 0
        self.last_context: AppContext | None = None
        self.greeting: str | None = None

    async def initialize(self, ctx: AppContext) -> None:
        self.initialize_count += 1
        self.last_context = ctx
        config = ctx.config
        if config is None:
            return
        self.greeting = f"{config.get_typed('greeting', 'Hello')}, {config.get_typed('target', 'world')}!"
        if ctx.logger is not None:
            ctx.logger.info(self.greeting)
        if ctx.storage is not None:
            await ctx.storage.save(self.app_id, {"last_greeting": self.greeting})

    async def on_shutdown(self) -> None:
        self.shutdown_called = True
