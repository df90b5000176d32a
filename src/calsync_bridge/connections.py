"""User-facing connection actions: manual sync, disconnect and window listing."""

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .channels import ChannelManager
from .config import Settings
from .database import ConnectionStore
from .exceptions import CalSyncError, ConnectionNotFoundError, ManualSyncThrottled
from .models import Connection, Occurrence, SyncReport, utc_now
from .recurrence import materialize_occurrences
from .services.base import BaseCalendarService
from .sync_engine import DeltaSyncEngine

logger = logging.getLogger(__name__)


class ConnectionService:
    """Actions a user (or an operator) takes on one calendar connection."""

    def __init__(
        self,
        settings: Settings,
        store: ConnectionStore,
        service: BaseCalendarService,
        engine: DeltaSyncEngine,
        channels: ChannelManager,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = settings.sync_config
        self.store = store
        self.service = service
        self.engine = engine
        self.channels = channels
        self.clock = clock

    def require_connection(self, user_id: str) -> Connection:
        connection = self.store.get_connection(user_id)
        if connection is None:
            raise ConnectionNotFoundError(f"No calendar connection for user {user_id}")
        return connection

    async def manual_sync(self, user_id: str) -> SyncReport:
        """Sync on request, at most once per cooldown period.

        Raises:
            ConnectionNotFoundError: If the user never connected
            ManualSyncThrottled: If the previous sync is too recent
            AuthError: If the connection has no usable credentials
        """
        connection = self.require_connection(user_id)
        cooldown = timedelta(minutes=self.config.manual_sync_cooldown_minutes)
        if connection.last_sync_at is not None:
            elapsed = self.clock() - connection.last_sync_at
            if elapsed < cooldown:
                remaining = math.ceil((cooldown - elapsed).total_seconds() / 60)
                raise ManualSyncThrottled(max(remaining, 1))

        logger.info(f"Manual sync requested for user {user_id}")
        return await self.engine.perform_sync(connection)

    async def disconnect(self, user_id: str, remove_events: Optional[bool] = None) -> Dict[str, object]:
        """Tear a connection down.

        The channel is stopped and the token revoked on a best-effort basis;
        the local teardown happens regardless. Imported events are kept unless
        ``remove_events`` (or ``remove_events_on_disconnect``) asks otherwise.
        """
        connection = self.require_connection(user_id)

        await self.channels.cancel(connection)

        credentials = self.store.get_credentials(user_id)
        if credentials is not None:
            try:
                await self.service.revoke_token(credentials.refresh_token or credentials.access_token)
            except CalSyncError as e:
                logger.warning(f"Token revocation failed for user {user_id}: {e}")

        if remove_events is None:
            remove_events = self.config.remove_events_on_disconnect
        removed = self.store.delete_remote_events(user_id) if remove_events else 0

        self.store.disconnect(user_id)
        logger.info(f"Disconnected calendar for user {user_id} ({removed} imported events removed)")
        return {'user_id': user_id, 'events_removed': removed}

    def list_window(self, user_id: str, start: datetime, end: datetime) -> List[Occurrence]:
        """One-off events and expanded recurring events within ``[start, end)``, by start."""
        occurrences: List[Occurrence] = []
        for event in self.store.list_events(user_id, start, end):
            if event.is_recurring:
                try:
                    occurrences.extend(
                        materialize_occurrences(event, start, end, self.config.max_occurrences)
                    )
                except ValueError as e:
                    logger.warning(f"Cannot expand recurring event {event.id}: {e}")
                continue
            occurrences.append(Occurrence(
                parent_id=event.id,
                user_id=event.user_id,
                external_id=event.external_id,
                title=event.title,
                description=event.description,
                start=event.start,
                end=event.end,
                timezone=event.timezone,
                is_virtual=False,
            ))
        occurrences.sort(key=lambda o: o.start)
        return occurrences
