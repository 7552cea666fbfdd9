"""Main entry point - wires the orchestrator to the HTTP server."""

import asyncio
import logging
import os
import sys
from typing import Optional

import uvicorn

from .config import Config, load_config
from .errors import StateLoadError
from .orchestrator import SessionOrchestrator
from .server import create_app

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: Config):
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(os.path.expanduser(config.log_file)))
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


class CommanderApp:
    """Main application: orchestrator, poll loop and API server."""

    def __init__(self, config: Config, orchestrator: Optional[SessionOrchestrator] = None):
        self.config = config
        self.orchestrator = orchestrator or SessionOrchestrator(config)
        self.app = create_app(self.orchestrator, config)
        self._server: Optional[uvicorn.Server] = None

    async def start(self):
        """Restore state, start polling and serve until shutdown."""
        logger.info("Starting Worktree Commander...")

        if not await self.orchestrator.executor.is_installed():
            raise RuntimeError("tmux is not installed or not on PATH")

        # Fatal on failure: there is no safe default session set
        self.orchestrator.restore()
        await self.orchestrator.reconcile()
        await self.orchestrator.start()

        server_config = uvicorn.Config(
            self.app,
            host=self.config.server.host,
            port=self.config.server.port,
            log_level=self.config.log_level.lower(),
        )
        self._server = uvicorn.Server(server_config)

        logger.info(f"Starting server on http://{self.config.server.host}:{self.config.server.port}")
        await self._server.serve()

    async def stop(self):
        """Stop polling. tmux sessions and worktrees are left running."""
        logger.info("Stopping Worktree Commander...")
        await self.orchestrator.stop()
        logger.info("Shutdown complete")


async def main():
    """Main entry point."""
    config = load_config(os.environ.get("WORKTREE_COMMANDER_CONFIG", "config.yaml"))
    setup_logging(config)

    app = CommanderApp(config)
    try:
        await app.start()
    except StateLoadError as e:
        logger.error(f"Cannot start: {e}")
        sys.exit(1)
    finally:
        await app.stop()


def run():
    """Entry point for console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
