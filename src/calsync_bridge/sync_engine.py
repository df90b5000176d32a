"""Incremental (cursor based) synchronization from the remote calendar into the local store."""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .config import Settings
from .database import ConnectionStore
from .exceptions import CursorInvalidatedError
from .models import (
    Connection, Event, EventSource, EventsQuery, MergeAction, RecurringMode, RemoteEvent,
    SyncMode, SyncReport, SyncState, utc_now,
)
from .recurrence import DEFAULT_DURATION, next_occurrence, normalize_recurrence, offset_minutes
from .services.base import BaseCalendarService
from .token_manager import TokenManager

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 255
DESCRIPTION_MAX_LENGTH = 5000
DEFAULT_TITLE = "Untitled"


class DeltaSyncEngine:
    """Pulls remote changes for one connection and merges them idempotently.

    The connection's cursor drives an explicit state machine:

    * ``NO_CURSOR``: full sync over the bounded window with provider-side
      expansion of recurring events;
    * ``CURSOR_VALID``: delta sync using the stored cursor;
    * ``CURSOR_EXPIRED``: the provider rejected the cursor; it is cleared and a
      single full sync follows. A second rejection in the same invocation is
      raised rather than retried.
    """

    def __init__(
        self,
        settings: Settings,
        store: ConnectionStore,
        service: BaseCalendarService,
        token_manager: TokenManager,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            store: Local connection and event store
            service: Remote calendar service
            token_manager: Source of valid access tokens
            clock: Returns the current UTC time
        """
        self.settings = settings
        self.config = settings.sync_config
        self.store = store
        self.service = service
        self.token_manager = token_manager
        self.clock = clock
        self.logger = logger.getChild('delta')

    async def perform_sync(self, connection: Connection) -> SyncReport:
        """Synchronize one connection.

        Raises:
            AuthError: If no valid access token could be obtained
            RemoteApiError: If a page fetch failed (other than cursor invalidation)
        """
        report = SyncReport(user_id=connection.user_id, started_at=self.clock())
        access_token = await self.token_manager.get_valid_access_token(connection)

        state = connection.sync_state
        next_sync_token: Optional[str] = None

        while True:
            if state == SyncState.CURSOR_VALID:
                try:
                    next_sync_token = await self._delta_sync(access_token, connection, report)
                    report.mode = SyncMode.DELTA
                    break
                except CursorInvalidatedError:
                    self.logger.warning(
                        f"Sync token rejected for user {connection.user_id}; "
                        "clearing it and performing a full resync"
                    )
                    self.store.set_sync_token(connection.user_id, None)
                    state = SyncState.CURSOR_EXPIRED
            elif state == SyncState.CURSOR_EXPIRED:
                report.fallback_used = True
                state = SyncState.NO_CURSOR
            else:
                next_sync_token = await self._full_sync(access_token, connection, report)
                report.mode = SyncMode.FULL
                break

        if next_sync_token is None and report.mode == SyncMode.DELTA:
            next_sync_token = connection.sync_token

        report.completed_at = self.clock()
        self.store.mark_synced(connection.user_id, next_sync_token, report.completed_at)

        self.logger.info(
            f"Sync {report.mode.value} for user {connection.user_id} complete: "
            f"{report.imported} imported, {report.updated} updated, {report.deleted} deleted, "
            f"{report.unchanged} unchanged, {report.skipped} skipped, {len(report.errors)} errors"
        )
        return report

    async def _full_sync(self, access_token: str, connection: Connection, report: SyncReport) -> Optional[str]:
        time_min, time_max = self.config.sync_window(self.clock())
        self.logger.info(
            f"Full sync for user {connection.user_id} between {time_min.isoformat()} and {time_max.isoformat()}"
        )
        query = EventsQuery.full(time_min, time_max, max_results=self.config.max_results_per_page)

        async def handle(item: RemoteEvent) -> None:
            report.record(self.merge_remote_event(connection.user_id, item))

        return await self._paginate(access_token, query, handle, report)

    async def _delta_sync(self, access_token: str, connection: Connection, report: SyncReport) -> Optional[str]:
        self.logger.debug(f"Delta sync for user {connection.user_id}")
        query = EventsQuery.delta(connection.sync_token, max_results=self.config.max_results_per_page)

        async def handle(item: RemoteEvent) -> None:
            if item.is_recurring_master and not item.is_cancelled:
                if self.config.recurring_mode == RecurringMode.INSTANCES:
                    await self._merge_instances(access_token, connection.user_id, item, report)
                    return
                report.record(self.merge_remote_event(connection.user_id, item, recurring=True))
                return
            report.record(self.merge_remote_event(connection.user_id, item))

        return await self._paginate(access_token, query, handle, report)

    async def _merge_instances(
        self,
        access_token: str,
        user_id: str,
        master: RemoteEvent,
        report: SyncReport,
    ) -> None:
        time_min, time_max = self.config.sync_window(self.clock())
        instances = await self.service.list_instances(access_token, master.id, time_min, time_max)
        self.logger.debug(f"Recurring event {master.id} expanded to {len(instances)} instances")
        for instance in instances:
            try:
                report.record(self.merge_remote_event(user_id, instance))
            except Exception as e:
                self._record_item_error(report, instance, e)

    async def _paginate(
        self,
        access_token: str,
        query: EventsQuery,
        handle_item: Callable[[RemoteEvent], Awaitable[None]],
        report: SyncReport,
    ) -> Optional[str]:
        """Walk every page; page failures propagate, item failures are recorded."""
        sync_token = None
        while True:
            page = await self.service.list_events_page(access_token, query)
            report.pages += 1
            for item in page.items:
                try:
                    await handle_item(item)
                except Exception as e:
                    self._record_item_error(report, item, e)
            if page.next_sync_token:
                sync_token = page.next_sync_token
            if not page.next_page_token:
                return sync_token
            query = query.next_page(page.next_page_token)

    def _record_item_error(self, report: SyncReport, item: RemoteEvent, error: Exception) -> None:
        self.logger.error(f"Failed to process remote event {item.id}: {error}")
        report.errors.append(f"{item.id}: {error}")

    def merge_remote_event(self, user_id: str, remote: RemoteEvent, recurring: bool = False) -> MergeAction:
        """Apply one remote item to the local store.

        Every write is flagged as sync-originated so change listeners do not
        push it back to the provider.
        """
        if remote.is_cancelled:
            if self.store.delete_by_external_id(user_id, remote.id, sync_origin=True):
                return MergeAction.DELETED
            return MergeAction.UNCHANGED

        if remote.all_day or remote.start is None:
            return MergeAction.SKIPPED

        candidate = self._build_event(user_id, remote, recurring)
        existing = self.store.get_event(user_id, remote.id)
        if existing is None:
            self.store.create_event(candidate, sync_origin=True)
            return MergeAction.CREATED

        if existing.eligibility_fields() == candidate.eligibility_fields():
            return MergeAction.UNCHANGED

        updated = existing.model_copy(update={
            'title': candidate.title,
            'description': candidate.description,
            'start': candidate.start,
            'end': candidate.end,
            'utc_offset_minutes': candidate.utc_offset_minutes,
            'timezone': candidate.timezone,
            'is_recurring': candidate.is_recurring,
            'rrule': candidate.rrule,
            'exception_dates': candidate.exception_dates,
            'next_occurrence_at': candidate.next_occurrence_at,
        })
        self.store.update_event(updated, sync_origin=True)
        return MergeAction.UPDATED

    def _build_event(self, user_id: str, remote: RemoteEvent, recurring: bool) -> Event:
        start = remote.start
        end = remote.end if remote.end and remote.end >= start else start

        fields = {
            'user_id': user_id,
            'external_id': remote.id,
            'source': EventSource.REMOTE,
            'title': (remote.summary or DEFAULT_TITLE)[:TITLE_MAX_LENGTH],
            'description': (remote.description or '')[:DESCRIPTION_MAX_LENGTH],
            'start': start,
            'end': end,
            'utc_offset_minutes': offset_minutes(start),
            'timezone': remote.timezone,
        }

        if recurring:
            rule = normalize_recurrence(remote.recurrence, start)
            fields.update({
                'is_recurring': True,
                'rrule': rule.to_rrule_string(),
                'exception_dates': rule.exception_dates,
                'next_occurrence_at': next_occurrence(
                    rule,
                    start,
                    end if end > start else start + DEFAULT_DURATION,
                    self.clock(),
                    max_occurrences=self.config.max_occurrences,
                ),
            })

        return Event(**fields)
