# app/main.py

from core.logging import configure_logging, get_logger
from app.containers import AppContainer


class ApplicationOrchestrator:
    """Owns the container and the startup/shutdown sequence of the back-office core."""

    def __init__(self, container: AppContainer = None):
        self.container = container or AppContainer()
        self.settings = self.container.settings()
        configure_logging(self.settings)
        self.logger = get_logger("backoffice.main", component="application")

    async def startup(self):
        """Initialize the account store; raise if it is unreachable."""
        self.logger.info("Starting back office", app=self.settings.app_name,
                         version=self.settings.version,
                         environment=self.settings.environment.value)

        db_manager = self.container.db_manager()
        await db_manager.init()
        if not await db_manager.verify_connection():
            raise RuntimeError("Account store is not reachable")
        self.logger.info("Database initialized and verified ready")

    async def shutdown(self):
        """Flush pending notifications, then close the connection pool."""
        self.logger.info("Shutting down back office")
        await self.container.event_emitter().drain()
        await self.container.db_manager().shutdown()
        self.logger.info("Back office shutdown complete")

    async def __aenter__(self):
        await self.startup()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()
