"""Wires the components together and runs the periodic sweep loop."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .background import BackgroundTasks
from .channels import ChannelManager
from .config import Settings
from .connections import ConnectionService
from .database import ConnectionStore, DatabaseConnectionStore, DatabaseManager
from .loop_guard import LocalChangeTrigger
from .models import SweepReport, utc_now
from .oauth import OAuthFlow
from .push import PushService
from .scheduler import SyncScheduler
from .services import BaseCalendarService, GoogleCalendarService
from .sync_engine import DeltaSyncEngine
from .token_manager import TokenManager
from .webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


class SyncRuntime:
    """All long-lived collaborators for one process.

    Args:
        settings: Application settings
        service: Remote calendar service (defaults to Google)
        store: Connection store (defaults to the SQLAlchemy store on ``database_url``)
        clock: Returns the current UTC time
        auto_push: Push application changes in the background as they happen
    """

    def __init__(
        self,
        settings: Settings,
        service: Optional[BaseCalendarService] = None,
        store: Optional[ConnectionStore] = None,
        clock: Callable[[], datetime] = utc_now,
        auto_push: bool = True,
    ):
        self.settings = settings
        config = settings.sync_config

        self.db_manager: Optional[DatabaseManager] = None
        if store is None:
            self.db_manager = DatabaseManager(settings)
            self.db_manager.init_db()
            store = DatabaseConnectionStore(self.db_manager)
        self.store = store
        self.service = service or GoogleCalendarService(settings)
        self.background = BackgroundTasks()

        self.token_manager = TokenManager(
            store,
            self.service,
            margin=timedelta(seconds=config.token_refresh_margin_seconds),
            clock=clock,
        )
        self.engine = DeltaSyncEngine(settings, store, self.service, self.token_manager, clock=clock)
        self.channels = ChannelManager(settings, store, self.service, self.token_manager, clock=clock)
        self.push = PushService(store, self.service, self.token_manager)
        self.change_trigger = LocalChangeTrigger(self.push, self.background if auto_push else None)
        store.add_listener(self.change_trigger)

        self.dispatcher = WebhookDispatcher(store, self.engine, config, self.background, clock=clock)
        self.oauth = OAuthFlow(
            settings, store, self.service, self.engine, self.channels, self.background, clock=clock
        )
        self.connections = ConnectionService(settings, store, self.service, self.engine, self.channels, clock=clock)
        self.scheduler = SyncScheduler(settings, store, self.engine, self.channels, clock=clock)

        self.loop_interval_seconds = config.sweep_interval_minutes * 60
        self.trigger = asyncio.Event()
        self.running = False
        self.last_sweep: Optional[SweepReport] = None
        self.sweep_task: Optional[asyncio.Task] = None

    async def run(self):
        """Sweep every ``sweep_interval_minutes`` or when signalled."""
        while self.running:
            try:
                try:
                    await asyncio.wait_for(self.trigger.wait(), timeout=self.loop_interval_seconds)
                except asyncio.TimeoutError:
                    pass
                finally:
                    self.trigger.clear()
                if not self.running:
                    break
                self.last_sweep = await self.scheduler.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Sweep loop iteration failed: {e}")
                await asyncio.sleep(2)

    def signal(self):
        if not self.trigger.is_set():
            self.trigger.set()

    def start(self) -> None:
        self.running = True
        self.sweep_task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self.running = False
        self.signal()
        if self.sweep_task:
            await asyncio.wait([self.sweep_task], timeout=5)
        await self.background.drain(timeout=5)
        await self.service.close()
