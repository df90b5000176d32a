"""Periodic sweep over all connected users."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from .channels import ChannelManager
from .config import Settings
from .database import ConnectionStore
from .exceptions import CalSyncError
from .models import Connection, SweepReport, utc_now
from .sync_engine import DeltaSyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs a safety-net sync for every connected user.

    Connections are processed in small concurrent batches with a pause between
    batches. One connection failing is counted and logged; it never stops the
    sweep.
    """

    def __init__(
        self,
        settings: Settings,
        store: ConnectionStore,
        engine: DeltaSyncEngine,
        channels: ChannelManager,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        config = settings.sync_config
        self.store = store
        self.engine = engine
        self.channels = channels
        self.clock = clock
        self.sleep = sleep
        self.min_interval = timedelta(minutes=config.sweep_min_interval_minutes)
        self.batch_size = config.sweep_batch_size
        self.batch_delay = config.sweep_batch_delay_seconds
        self.logger = logger.getChild('sweep')

    async def sweep(self) -> SweepReport:
        report = SweepReport(started_at=self.clock())
        self.channels.cleanup_expired()

        connections = self.store.list_connected()
        report.total = len(connections)
        if not connections:
            self.logger.info("No active connections to sync")
            report.completed_at = self.clock()
            return report

        self.logger.info(f"Sweeping {len(connections)} connection(s)")
        for i in range(0, len(connections), self.batch_size):
            batch = connections[i:i + self.batch_size]
            await asyncio.gather(*(self._process(connection, report) for connection in batch))
            if i + self.batch_size < len(connections):
                await self.sleep(self.batch_delay)

        report.completed_at = self.clock()
        self.logger.info(
            f"Sweep completed: {report.synced} synced, {report.skipped} skipped, {report.errors} errors"
        )
        return report

    async def _process(self, connection: Connection, report: SweepReport) -> None:
        now = self.clock()
        if connection.last_sync_at is not None and now - connection.last_sync_at < self.min_interval:
            report.skipped += 1
            return

        try:
            if self.channels.needs_renewal(connection):
                try:
                    await self.channels.renew(connection)
                except CalSyncError as e:
                    self.logger.warning(f"Channel renewal failed for user {connection.user_id}: {e}")
                connection = self.store.get_connection(connection.user_id) or connection

            await self.engine.perform_sync(connection)
            report.synced += 1
        except Exception as e:
            self.logger.error(f"Error syncing user {connection.user_id}: {e}")
            report.errors += 1
            report.failures[connection.user_id] = str(e)
