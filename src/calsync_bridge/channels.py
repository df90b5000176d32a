"""Push-notification channel registration, renewal and cleanup."""

import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import Settings
from .database import ConnectionStore
from .exceptions import CalSyncError
from .models import Connection, WebhookRegistration, utc_now
from .services.base import BaseCalendarService
from .token_manager import TokenManager

logger = logging.getLogger(__name__)

_CHANNEL_ID_UNSAFE = re.compile(r'[^A-Za-z0-9_\-]')


class ChannelManager:
    """Keeps one live push channel per connected user."""

    def __init__(
        self,
        settings: Settings,
        store: ConnectionStore,
        service: BaseCalendarService,
        token_manager: TokenManager,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.store = store
        self.service = service
        self.token_manager = token_manager
        self.clock = clock
        self.ttl = timedelta(days=settings.sync_config.webhook_ttl_days)
        self.renew_before = timedelta(hours=settings.sync_config.webhook_renew_before_hours)

    def channel_id_for(self, user_id: str, now: Optional[datetime] = None) -> str:
        """Unique channel id, ``calendar-<user>-<epoch ms>``."""
        now = now or self.clock()
        safe_user = _CHANNEL_ID_UNSAFE.sub('-', user_id)
        return f"calendar-{safe_user}-{int(now.timestamp() * 1000)}"

    async def setup(self, connection: Connection) -> WebhookRegistration:
        """Register a fresh channel, replacing any existing one.

        Raises:
            AuthError: If no access token is available
            RemoteApiError: If the provider refused the registration
        """
        if connection.webhook is not None:
            await self.cancel(connection)

        access_token = await self.token_manager.get_valid_access_token(connection)
        now = self.clock()
        registration = await self.service.watch_events(
            access_token,
            self.channel_id_for(connection.user_id, now),
            self.settings.webhook_address,
            now + self.ttl,
            token=self.settings.webhook_channel_token,
        )
        self.store.set_webhook(connection.user_id, registration)
        logger.info(
            f"Registered channel {registration.channel_id} for user {connection.user_id} "
            f"until {registration.expiration}"
        )
        return registration

    async def cancel(self, connection: Connection) -> bool:
        """Stop the connection's channel (best effort) and forget it."""
        webhook = connection.webhook
        if webhook is None:
            return False
        try:
            access_token = await self.token_manager.get_valid_access_token(connection)
            await self.service.stop_channel(access_token, webhook.channel_id, webhook.resource_id)
            logger.info(f"Stopped channel {webhook.channel_id} for user {connection.user_id}")
        except CalSyncError as e:
            logger.warning(f"Could not stop channel {webhook.channel_id} for user {connection.user_id}: {e}")
        self.store.set_webhook(connection.user_id, None)
        return True

    def needs_renewal(self, connection: Connection) -> bool:
        if connection.webhook is None:
            return True
        return connection.webhook.expires_within(self.renew_before, self.clock())

    async def renew(self, connection: Connection) -> WebhookRegistration:
        logger.info(f"Renewing channel for user {connection.user_id}")
        return await self.setup(connection)

    def cleanup_expired(self) -> int:
        cleared = self.store.clear_expired_webhooks(self.clock())
        if cleared:
            logger.info(f"Cleared {cleared} expired channel registration(s)")
        return cleared
