"""Push-notification handling: validate, correlate, deduplicate and trigger a sync."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping, Optional, Set

from .background import BackgroundTasks
from .database import ConnectionStore
from .exceptions import ValidationError
from .models import (
    ResourceState, SyncConfiguration, WebhookNotification, WebhookOutcome, WebhookResult, utc_now,
)
from .sync_engine import DeltaSyncEngine

logger = logging.getLogger(__name__)

CHANNEL_ID_HEADER = "X-Goog-Channel-ID"
RESOURCE_ID_HEADER = "X-Goog-Resource-ID"
RESOURCE_STATE_HEADER = "X-Goog-Resource-State"
MESSAGE_NUMBER_HEADER = "X-Goog-Message-Number"
CHANNEL_TOKEN_HEADER = "X-Goog-Channel-Token"


def notification_from_headers(headers: Mapping[str, str]) -> WebhookNotification:
    """Build a notification from the provider's request headers."""
    return WebhookNotification(
        channel_id=headers.get(CHANNEL_ID_HEADER),
        resource_id=headers.get(RESOURCE_ID_HEADER),
        resource_state=headers.get(RESOURCE_STATE_HEADER),
        message_number=headers.get(MESSAGE_NUMBER_HEADER),
    )


class WebhookDispatcher:
    """Turns push notifications into (at most one recent) sync per connection.

    The provider retries notifications that are not acknowledged quickly, so
    every well-formed notification gets a success-shaped answer, including
    ones for channels that are no longer known. The sync itself runs detached.

    Deduplication looks at three things: the last completed sync, the last
    sync this dispatcher triggered, and whether one is still running for the
    user. A burst of notifications therefore starts a single sync even before
    that sync has written ``last_sync_at``.
    """

    def __init__(
        self,
        store: ConnectionStore,
        engine: DeltaSyncEngine,
        config: SyncConfiguration,
        background: BackgroundTasks,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.engine = engine
        self.dedup_window = timedelta(seconds=config.webhook_dedup_seconds)
        self.background = background
        self.clock = clock
        self.logger = logger.getChild('dispatcher')
        self._last_triggered: Dict[str, datetime] = {}
        self._in_flight: Set[str] = set()

    def _recently_synced(self, user_id: str, last_sync_at: Optional[datetime], now: datetime) -> bool:
        if user_id in self._in_flight:
            return True
        for instant in (last_sync_at, self._last_triggered.get(user_id)):
            if instant is not None and now - instant < self.dedup_window:
                return True
        return False

    async def receive(self, notification: WebhookNotification) -> WebhookResult:
        """Handle one notification.

        Raises:
            ValidationError: If the channel or resource id is missing
        """
        if not notification.channel_id or not notification.resource_id:
            raise ValidationError("Push notification is missing channel or resource id")

        if notification.resource_state == ResourceState.SYNC.value:
            # Handshake sent right after a channel is created
            self.logger.info(f"Channel {notification.channel_id} handshake acknowledged")
            return WebhookResult(outcome=WebhookOutcome.ACKNOWLEDGED)

        connection = self.store.find_by_webhook(notification.channel_id, notification.resource_id)
        if connection is None:
            self.logger.warning(
                f"No connected user for channel {notification.channel_id} / {notification.resource_id}"
            )
            return WebhookResult(outcome=WebhookOutcome.NOT_FOUND)

        now = self.clock()
        user_id = connection.user_id
        if self._recently_synced(user_id, connection.last_sync_at, now):
            self.logger.debug(f"Skipping notification for user {user_id}: synced recently")
            return WebhookResult(outcome=WebhookOutcome.DEDUPLICATED, user_id=user_id)

        self.logger.info(
            f"Change notification ({notification.resource_state}) for user {user_id}, starting sync"
        )
        self._last_triggered[user_id] = now
        self._in_flight.add(user_id)
        task = self.background.spawn(
            self.engine.perform_sync(connection),
            f"webhook sync for user {user_id}",
        )
        task.add_done_callback(lambda _: self._in_flight.discard(user_id))
        return WebhookResult(outcome=WebhookOutcome.SYNC_TRIGGERED, user_id=user_id)
