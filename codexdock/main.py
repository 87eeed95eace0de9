"""Main entry point - orchestrates all components."""

import asyncio
import logging
import os

import uvicorn

from .app_server_bridge import AppServerBridge
from .app_server_manager import AppServerManager
from .config import Settings, load_config, resolve_settings
from .repo_registry import RepoRegistry
from .server import create_app
from .thread_list_refresher import ThreadListRefresher
from .turn_state import TurnStateStore
from .websocket_gateway import WebSocketGateway

logger = logging.getLogger(__name__)


class CodexDockApp:
    """Main application orchestrator."""

    def __init__(self, config: dict, settings: Settings):
        self.config = config
        self.settings = settings

        self.registry = RepoRegistry(data_dir=settings.data_dir, file_name=settings.repo_file)
        self.manager = AppServerManager(registry=self.registry, config=settings.app_server)
        self.gateway = WebSocketGateway(registry=self.registry, manager=self.manager)
        self.turn_state = TurnStateStore()
        self.refresher = ThreadListRefresher(
            manager=self.manager,
            gateway=self.gateway,
            delay_seconds=settings.refresh_delay_seconds,
        )
        self.bridge = AppServerBridge(
            manager=self.manager,
            gateway=self.gateway,
            turn_state=self.turn_state,
            refresher=self.refresher,
        )

        self.app = create_app(
            registry=self.registry,
            manager=self.manager,
            gateway=self.gateway,
            turn_state=self.turn_state,
            refresher=self.refresher,
            config=config,
        )

    async def start(self):
        """Start all components and serve until shutdown."""
        logger.info("Starting CodexDock...")
        self.bridge.init()

        config = uvicorn.Config(
            self.app,
            host=self.settings.host,
            port=self.settings.port,
            log_level="info",
        )
        server = uvicorn.Server(config)

        init_task = asyncio.create_task(self.manager.init_all())
        display_host = "localhost" if self.settings.host == "0.0.0.0" else self.settings.host
        logger.info(f"Starting server on http://{display_host}:{self.settings.port}")
        try:
            await server.serve()
        finally:
            init_task.cancel()
            await self.stop()

    async def stop(self):
        """Stop all components."""
        logger.info("Stopping CodexDock...")
        await self.refresher.aclose()
        await self.manager.stop_all()
        logger.info("Shutdown complete")


async def main():
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config(os.environ.get("CODEXDOCK_CONFIG", "config.yaml"))
    settings = resolve_settings(config)

    app = CodexDockApp(config, settings)
    await app.start()


def run():
    """Entry point for console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
