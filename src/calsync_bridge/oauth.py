"""OAuth connect flow: state handling, code exchange and initial setup."""

import base64
import binascii
import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import quote, urlsplit

from pydantic import BaseModel

from .background import BackgroundTasks
from .channels import ChannelManager
from .config import Settings
from .database import ConnectionStore
from .exceptions import CalSyncError, ValidationError
from .models import Connection, ConnectionStatus, Credentials, utc_now
from .services.base import BaseCalendarService
from .sync_engine import DeltaSyncEngine

logger = logging.getLogger(__name__)

FRONTEND_RESULT_PATH = "/auth/google-calendar"


class OAuthState(BaseModel):
    """Decoded OAuth ``state`` parameter."""

    user_id: str
    origin: str


class OAuthFlow:
    """Connects a user's calendar account.

    The ``state`` parameter carries the user id and the frontend origin to
    return to, as base64url JSON. With ``oauth_state_secret`` configured it is
    HMAC-signed and unsigned states are rejected; without it, legacy states
    holding only a plain user id are still accepted.
    """

    def __init__(
        self,
        settings: Settings,
        store: ConnectionStore,
        service: BaseCalendarService,
        engine: DeltaSyncEngine,
        channels: ChannelManager,
        background: BackgroundTasks,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.store = store
        self.service = service
        self.engine = engine
        self.channels = channels
        self.background = background
        self.clock = clock

    def resolve_origin(self, candidate: Optional[str]) -> str:
        """Allowed origin matching ``candidate`` (a URL or origin), else the default one."""
        if candidate:
            parts = urlsplit(candidate)
            origin = f"{parts.scheme}://{parts.netloc}" if parts.scheme and parts.netloc else candidate.rstrip('/')
            if origin in self.settings.redirect_origins:
                return origin
        return self.settings.default_redirect_origin

    def _sign(self, payload: str) -> str:
        key = self.settings.oauth_state_secret.encode('utf-8')
        return hmac.new(key, payload.encode('ascii'), hashlib.sha256).hexdigest()

    def create_state(self, user_id: str, origin: Optional[str] = None) -> str:
        data = json.dumps({'userId': user_id, 'origin': self.resolve_origin(origin)}, separators=(',', ':'))
        payload = base64.urlsafe_b64encode(data.encode('utf-8')).decode('ascii')
        if self.settings.oauth_state_secret:
            return f"{payload}.{self._sign(payload)}"
        return payload

    def parse_state(self, state: str) -> OAuthState:
        """Decode a state value.

        Raises:
            ValidationError: If the state is empty, or its signature is missing or wrong
        """
        if not state:
            raise ValidationError("Missing OAuth state")

        payload = state
        if self.settings.oauth_state_secret:
            payload, _, signature = state.partition('.')
            if not signature or not hmac.compare_digest(signature, self._sign(payload)):
                raise ValidationError("OAuth state signature is invalid")

        try:
            padded = payload + '=' * (-len(payload) % 4)
            data = json.loads(base64.urlsafe_b64decode(padded.encode('ascii')).decode('utf-8'))
            user_id = data['userId']
            origin = data.get('origin')
        except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError):
            if self.settings.oauth_state_secret:
                raise ValidationError("OAuth state payload is malformed")
            # Legacy state: the bare user id
            user_id, origin = state, None

        if not user_id:
            raise ValidationError("OAuth state carries no user id")
        return OAuthState(user_id=user_id, origin=self.resolve_origin(origin))

    def authorization_url(self, user_id: str, origin: Optional[str] = None) -> str:
        return self.service.build_authorize_url(self.create_state(user_id, origin))

    def result_url(self, origin: str, error: Optional[str] = None) -> str:
        if error:
            return f"{origin}{FRONTEND_RESULT_PATH}?error={quote(error)}"
        return f"{origin}{FRONTEND_RESULT_PATH}?success=true"

    async def handle_callback(self, code: str, state: str) -> Connection:
        """Exchange the code, store the connection and start the initial sync.

        The initial sync and channel registration run detached; their
        failures are logged and picked up again by the scheduled sweep.

        Raises:
            ValidationError: If the state is invalid
            AuthError: If the provider rejected the code
        """
        parsed = self.parse_state(state)
        grant = await self.service.exchange_code(code)
        now = self.clock()

        existing = self.store.get_connection(parsed.user_id)
        connection = Connection(
            user_id=parsed.user_id,
            status=ConnectionStatus.CONNECTED,
            # A reconnect starts over with a full sync
            sync_token=None,
            webhook=existing.webhook if existing else None,
            connected_email=grant.email or (existing.connected_email if existing else None),
            created_at=existing.created_at if existing else now,
        )
        connection = self.store.save_connection(connection)

        previous = self.store.get_credentials(parsed.user_id)
        self.store.save_credentials(parsed.user_id, Credentials(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or (previous.refresh_token if previous else None),
            expires_at=grant.expires_at(now),
            scope=grant.scope,
        ))
        logger.info(f"Connected calendar for user {parsed.user_id} ({connection.connected_email or 'unknown email'})")

        self.background.spawn(self.initial_setup(parsed.user_id), f"initial setup for user {parsed.user_id}")
        return connection

    async def initial_setup(self, user_id: str) -> None:
        connection = self.store.get_connection(user_id)
        try:
            await self.engine.perform_sync(connection)
        except CalSyncError as e:
            logger.error(f"Initial sync failed for user {user_id}: {e}")
        try:
            await self.channels.setup(self.store.get_connection(user_id))
        except CalSyncError as e:
            logger.error(f"Channel registration failed for user {user_id}: {e}")
