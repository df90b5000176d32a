"""Base calendar service interface with async support."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
import logging

from ..models import Event, EventsPage, EventsQuery, RemoteEvent, TokenGrant, WebhookRegistration
from ..config import Settings

logger = logging.getLogger(__name__)


class BaseCalendarService(ABC):
    """Remote calendar boundary used by the sync engine.

    Implementations are stateless with respect to users: every data call takes
    the caller's access token, so one instance serves all connections.
    """

    name = "remote"

    def __init__(self, settings: Settings):
        """Initialize calendar service.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.logger = logger.getChild(self.name)

    # Authorization

    @abstractmethod
    def build_authorize_url(self, state: str) -> str:
        """URL the user is redirected to in order to grant access."""

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for tokens.

        Raises:
            AuthError: If the provider rejects the code
        """

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Obtain a fresh access token.

        Raises:
            AuthError: If the refresh token was rejected
        """

    @abstractmethod
    async def revoke_token(self, token: str) -> None:
        """Revoke a refresh or access token."""

    # Events

    @abstractmethod
    async def list_events_page(self, access_token: str, query: EventsQuery) -> EventsPage:
        """Fetch one page of events.

        Raises:
            CursorInvalidatedError: If ``query.sync_token`` was rejected
            RateLimitError: If the provider asked to back off
            RemoteApiError: For any other failure
        """

    @abstractmethod
    async def list_instances(
        self,
        access_token: str,
        event_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> List[RemoteEvent]:
        """Provider-expanded instances of a recurring master within a window."""

    @abstractmethod
    async def insert_event(self, access_token: str, event: Event) -> RemoteEvent:
        """Create ``event`` remotely and return the created item."""

    @abstractmethod
    async def update_event(self, access_token: str, external_id: str, event: Event) -> RemoteEvent:
        """Replace the remote item with the contents of ``event``."""

    @abstractmethod
    async def delete_event(self, access_token: str, external_id: str) -> None:
        """Delete a remote item. Already-gone items are not an error."""

    # Push notifications

    @abstractmethod
    async def watch_events(
        self,
        access_token: str,
        channel_id: str,
        address: str,
        expiration: datetime,
        token: Optional[str] = None,
    ) -> WebhookRegistration:
        """Register a push-notification channel on the user's calendar.

        ``token`` is echoed back by the provider in every notification.
        """

    @abstractmethod
    async def stop_channel(self, access_token: str, channel_id: str, resource_id: str) -> None:
        """Stop a push-notification channel."""

    async def close(self) -> None:
        """Release any held resources."""

    async def _run_blocking(self, func):
        """Run a blocking client call in the default executor with a timeout."""
        return await asyncio.wait_for(
            asyncio.get_event_loop().run_in_executor(None, func),
            timeout=self.settings.request_timeout_seconds,
        )
