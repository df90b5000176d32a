"""Access-token lifecycle: return a valid token, refreshing when close to expiry."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .database import ConnectionStore
from .exceptions import AuthError
from .models import Connection, Credentials, utc_now
from .services.base import BaseCalendarService

logger = logging.getLogger(__name__)


class TokenManager:
    """Hands out valid access tokens for connections.

    A stored token is reused while more than ``margin`` remains before it
    expires. Otherwise exactly one refresh is attempted. There is no lock:
    concurrent callers may each refresh and the last persisted grant wins.
    """

    def __init__(
        self,
        store: ConnectionStore,
        service: BaseCalendarService,
        margin: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.service = service
        self.margin = margin
        self.clock = clock

    async def get_valid_access_token(self, connection: Optional[Connection]) -> str:
        """Return an access token usable for at least ``margin``.

        Raises:
            AuthError: When there is no connected account, no stored credentials,
                no refresh token, or the refresh itself failed
        """
        if connection is None or not connection.is_connected:
            raise AuthError("Calendar is not connected")

        user_id = connection.user_id
        credentials = self.store.get_credentials(user_id)
        if credentials is None:
            self._fail(user_id, "No stored credentials")

        now = self.clock()
        if credentials.expires_at is not None and credentials.expires_at - now > self.margin:
            return credentials.access_token

        if not credentials.refresh_token:
            self._fail(user_id, "Access token expired and no refresh token is stored")

        logger.info(f"Refreshing access token for user {user_id}")
        try:
            grant = await self.service.refresh_access_token(credentials.refresh_token)
        except AuthError as e:
            self._fail(user_id, str(e))

        refreshed = Credentials(
            access_token=grant.access_token,
            # The provider may rotate the refresh token
            refresh_token=grant.refresh_token or credentials.refresh_token,
            expires_at=grant.expires_at(now),
            scope=grant.scope or credentials.scope,
        )
        self.store.save_credentials(user_id, refreshed)
        return refreshed.access_token

    def _fail(self, user_id: str, reason: str) -> None:
        logger.warning(f"Token refresh failed for user {user_id}: {reason}")
        self.store.record_refresh_failure(user_id, reason)
        raise AuthError(f"Could not obtain an access token: {reason}")
