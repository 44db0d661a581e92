import asyncio

import structlog

logger = structlog.get_logger()


class BackupMonitorScheduler:
    """Runs the backup scan and reconcile cycle on a fixed interval"""

    def __init__(self, tracker, interval_seconds: int = 10):
        self.tracker = tracker
        self.interval_seconds = interval_seconds
        self.running = False

    async def run_once(self):
        """
        One tick: pick up new vzdump tasks, then refresh the tracked ones.
        Errors are logged so the next tick still runs.
        """
        try:
            await self.tracker.scan_for_new_backups()
        except Exception as e:
            logger.error("Backup scan failed", error=str(e))

        try:
            await self.tracker.check_active_backups()
        except Exception as e:
            logger.error("Backup check failed", error=str(e))

    async def start(self):
        self.running = True
        logger.info("Backup monitor started", interval_seconds=self.interval_seconds)

        while self.running:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)

        logger.info("Backup monitor stopped")

    def stop(self):
        """Stop the scheduler loop"""
        self.running = False
        logger.info("Backup monitor stop requested")


class RegistryRefreshScheduler:
    """Reloads the container registry so migrations and new containers are seen"""

    def __init__(self, registry, interval_seconds: int = 300):
        self.registry = registry
        self.interval_seconds = interval_seconds
        self.running = False

    async def run_once(self):
        try:
            changes = await self.registry.refresh()
            if any(changes.values()):
                logger.info("Container changes detected", **changes)
        except Exception as e:
            logger.error("Container registry refresh failed", error=str(e))

    async def start(self):
        """
        Start the refresh loop. The first refresh happens at startup, so the
        loop waits one interval before its first run.
        """
        self.running = True
        logger.info("Registry refresh scheduler started", interval_seconds=self.interval_seconds)

        while self.running:
            await asyncio.sleep(self.interval_seconds)
            if not self.running:
                break
            await self.run_once()

        logger.info("Registry refresh scheduler stopped")

    def stop(self):
        self.running = False
        logger.info("Registry refresh scheduler stop requested")
