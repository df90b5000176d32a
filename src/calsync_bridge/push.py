"""Forward application-originated event writes to the remote calendar."""

import logging
from typing import Optional

from .database import ConnectionStore
from .models import Event
from .services.base import BaseCalendarService
from .token_manager import TokenManager

logger = logging.getLogger(__name__)


class PushService:
    """Applies local creates, updates and deletes to the user's remote calendar."""

    def __init__(self, store: ConnectionStore, service: BaseCalendarService, token_manager: TokenManager):
        self.store = store
        self.service = service
        self.token_manager = token_manager

    async def _access_token(self, user_id: str) -> Optional[str]:
        connection = self.store.get_connection(user_id)
        if connection is None or not connection.is_connected:
            logger.debug(f"User {user_id} has no connected calendar; nothing to push")
            return None
        return await self.token_manager.get_valid_access_token(connection)

    async def push_create(self, event: Event) -> Optional[Event]:
        """Insert a never-pushed event remotely and record its remote id.

        The id is written back with ``sync_origin=True`` so the write is not
        treated as a new application change.
        """
        current = self.store.get_event_by_id(event.id) if event.id else event
        if current is None:
            logger.debug(f"Event {event.id} was deleted before it could be pushed")
            return None
        if current.external_id:
            logger.debug(f"Event {event.id} already has remote id {current.external_id}")
            return None

        access_token = await self._access_token(current.user_id)
        if access_token is None:
            return None

        remote = await self.service.insert_event(access_token, current)
        logger.info(f"Pushed event {current.id} for user {current.user_id} as {remote.id}")
        return self.store.update_event(
            current.model_copy(update={'external_id': remote.id}),
            sync_origin=True,
        )

    async def push_update(self, event: Event) -> None:
        if not event.external_id:
            await self.push_create(event)
            return
        access_token = await self._access_token(event.user_id)
        if access_token is None:
            return
        await self.service.update_event(access_token, event.external_id, event)
        logger.info(f"Pushed update of event {event.id} to {event.external_id}")

    async def push_delete(self, event: Event) -> None:
        """Delete the remote copy; an already-missing remote item counts as deleted."""
        if not event.external_id:
            return
        access_token = await self._access_token(event.user_id)
        if access_token is None:
            return
        await self.service.delete_event(access_token, event.external_id)
        logger.info(f"Deleted remote event {event.external_id}")
