"""Data models for connection state, events and synchronization results."""

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
import re
from uuid import UUID, uuid4

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, Field, field_validator, model_validator
import pytz

WEEKDAY_TOKEN = re.compile(r'^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$')


class ConnectionStatus(str, Enum):
    """Connection status enumeration."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Frequency(str, Enum):
    """Supported recurrence frequencies."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class SyncState(str, Enum):
    """Cursor state of a connection as seen by one sync attempt."""

    NO_CURSOR = "no_cursor"
    CURSOR_VALID = "cursor_valid"
    CURSOR_EXPIRED = "cursor_expired"


class SyncMode(str, Enum):
    """Which path completed a sync attempt."""

    FULL = "full"
    DELTA = "delta"


class RecurringMode(str, Enum):
    """How recurring masters seen during delta sync are stored locally."""

    INSTANCES = "instances"  # fetch provider-expanded instances, one row each
    MASTERS = "masters"  # one recurring row, expanded locally on read


class ResourceState(str, Enum):
    """Google push notification resource states."""

    SYNC = "sync"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class WebhookOutcome(str, Enum):
    """What the dispatcher did with a push notification."""

    ACKNOWLEDGED = "acknowledged"
    NOT_FOUND = "not_found"
    DEDUPLICATED = "deduplicated"
    SYNC_TRIGGERED = "sync_triggered"


class EventSource(str, Enum):
    """Where a local event row was first created."""

    LOCAL = "local"
    REMOTE = "remote"


class ChangeKind(str, Enum):
    """Kind of local store write reported to change listeners."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class MergeAction(str, Enum):
    """Result of merging one remote item into the local store."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


class Credentials(BaseModel):
    """OAuth credentials held by the (encrypted) credential store."""

    access_token: str = Field(..., description="Current access token")
    refresh_token: Optional[str] = Field(None, description="Long-lived refresh token")
    expires_at: Optional[datetime] = Field(None, description="Access token expiry instant")
    scope: Optional[str] = Field(None)

    def __repr__(self) -> str:
        return f"Credentials(expires_at={self.expires_at!r})"


class TokenGrant(BaseModel):
    """Response of the provider's token endpoint."""

    access_token: str
    expires_in: int = Field(3600, ge=0)
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    email: Optional[str] = None

    def expires_at(self, now: Optional[datetime] = None) -> datetime:
        """Absolute expiry computed from ``expires_in``."""
        return (now or utc_now()) + timedelta(seconds=self.expires_in)


class WebhookRegistration(BaseModel):
    """A registered push-notification channel."""

    channel_id: str = Field(..., min_length=1)
    resource_id: str = Field(..., min_length=1)
    expiration: Optional[datetime] = Field(None)

    def expires_within(self, delta: timedelta, now: Optional[datetime] = None) -> bool:
        if self.expiration is None:
            return True
        return self.expiration - (now or utc_now()) < delta


class Connection(BaseModel):
    """One user's link to their remote calendar account."""

    user_id: str = Field(..., description="Owning user identifier")
    status: ConnectionStatus = Field(ConnectionStatus.CONNECTED)
    sync_token: Optional[str] = Field(None, description="Opaque delta cursor")
    webhook: Optional[WebhookRegistration] = Field(None)
    last_sync_at: Optional[datetime] = Field(None)
    connected_email: Optional[str] = Field(None)
    failed_refresh_count: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def sync_state(self) -> SyncState:
        return SyncState.CURSOR_VALID if self.sync_token else SyncState.NO_CURSOR


class RecurrenceRule(BaseModel):
    """Internal representation of a recurrence rule."""

    freq: Frequency
    interval: int = Field(1, ge=1)
    by_day: List[str] = Field(default_factory=list, description="Weekday tokens, optionally ordinal (MO, 2MO, -1FR)")
    by_month_day: List[int] = Field(default_factory=list)
    by_hour: Optional[int] = Field(None, ge=0, le=23)
    by_minute: Optional[int] = Field(None, ge=0, le=59)
    by_second: Optional[int] = Field(None, ge=0, le=59)
    count: Optional[int] = Field(None, ge=1)
    until: Optional[datetime] = Field(None)
    exception_dates: List[date] = Field(default_factory=list)

    @field_validator('by_day')
    @classmethod
    def validate_by_day(cls, v):
        tokens = []
        for token in v:
            match = WEEKDAY_TOKEN.match(token.strip().upper())
            if not match:
                raise ValueError(f"Invalid weekday token: {token}")
            ordinal, weekday = match.groups()
            if ordinal is None:
                tokens.append(weekday)
            elif 1 <= abs(int(ordinal)) <= 53:
                tokens.append(f"{int(ordinal)}{weekday}")
            else:
                raise ValueError(f"Invalid weekday token: {token}")
        return tokens

    @field_validator('by_month_day')
    @classmethod
    def validate_by_month_day(cls, v):
        for day in v:
            if day == 0 or not -31 <= day <= 31:
                raise ValueError(f"BYMONTHDAY must be within 1..31 or -31..-1, got {day}")
        return v

    def to_rrule_string(self) -> str:
        """Serialize to the stored ``FREQ=...;BYHOUR=...`` form (no ``RRULE:`` prefix)."""
        parts = [f"FREQ={self.freq.value}"]
        if self.interval != 1:
            parts.append(f"INTERVAL={self.interval}")
        if self.by_day:
            parts.append(f"BYDAY={','.join(self.by_day)}")
        if self.by_month_day:
            parts.append(f"BYMONTHDAY={','.join(str(d) for d in self.by_month_day)}")
        if self.count is not None:
            parts.append(f"COUNT={self.count}")
        if self.until is not None:
            parts.append(f"UNTIL={self.until.astimezone(pytz.UTC).strftime('%Y%m%dT%H%M%SZ')}")
        if self.by_hour is not None:
            parts.append(f"BYHOUR={self.by_hour}")
        if self.by_minute is not None:
            parts.append(f"BYMINUTE={self.by_minute}")
        if self.by_second is not None:
            parts.append(f"BYSECOND={self.by_second}")
        return ';'.join(parts)


class Event(BaseModel):
    """Local event row."""

    id: Optional[str] = Field(None, description="Local row id")
    user_id: str = Field(...)
    external_id: Optional[str] = Field(None, description="Remote event id; None until pushed")
    source: EventSource = Field(EventSource.LOCAL)
    title: str = Field("")
    description: str = Field("")
    start: datetime = Field(...)
    end: datetime = Field(...)
    utc_offset_minutes: int = Field(0, description="UTC offset the start was expressed in")
    timezone: Optional[str] = Field(None, description="IANA timezone name if known")
    is_recurring: bool = Field(False)
    rrule: Optional[str] = Field(None)
    exception_dates: List[date] = Field(default_factory=list)
    next_occurrence_at: Optional[datetime] = Field(None)
    active: bool = Field(True)
    created_at: Optional[datetime] = Field(None)
    updated_at: Optional[datetime] = Field(None)

    @field_validator('start', 'end', mode='before')
    @classmethod
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    @model_validator(mode='after')
    def check_consistency(self):
        if self.is_recurring and not self.rrule:
            raise ValueError("A recurring event must carry a rule string")
        if self.end < self.start:
            raise ValueError(f"End time ({self.end}) must not be before start time ({self.start})")
        return self

    def eligibility_fields(self) -> Dict[str, Any]:
        """Fields compared by the merge policy to decide whether to write."""
        return {
            'title': self.title,
            'description': self.description or '',
            'start': self.start,
            'end': self.end,
            'is_recurring': self.is_recurring,
            'rrule': self.rrule,
        }


class RemoteEvent(BaseModel):
    """Provider-agnostic view of one item returned by the remote calendar."""

    id: str
    status: str = Field("confirmed")
    summary: str = Field("")
    description: str = Field("")
    start: Optional[datetime] = Field(None)
    end: Optional[datetime] = Field(None)
    all_day: bool = Field(False)
    timezone: Optional[str] = Field(None)
    recurrence: List[str] = Field(default_factory=list)
    recurring_event_id: Optional[str] = Field(None)
    creator_email: Optional[str] = Field(None)
    updated: Optional[datetime] = Field(None)

    @property
    def is_cancelled(self) -> bool:
        return self.status == 'cancelled'

    @property
    def is_recurring_master(self) -> bool:
        """A master carries its own rule and is not an instance of another event."""
        return bool(self.recurrence) and not self.recurring_event_id


class LocalChange(BaseModel):
    """A write to the local event store, as seen by change listeners.

    ``sync_origin`` is transient: it travels with the notification and is never
    persisted on the row.
    """

    kind: ChangeKind
    event: Event
    sync_origin: bool = False


class EventsQuery(BaseModel):
    """Parameters of one events.list page request."""

    sync_token: Optional[str] = None
    page_token: Optional[str] = None
    max_results: int = Field(250, ge=1, le=2500)
    show_deleted: bool = False
    single_events: bool = False
    time_min: Optional[datetime] = None
    time_max: Optional[datetime] = None

    @model_validator(mode='after')
    def cursor_is_exclusive(self):
        # The provider rejects a sync token combined with expansion or a window
        if self.sync_token and (self.single_events or self.time_min or self.time_max):
            raise ValueError("sync_token cannot be combined with single_events or a time window")
        return self

    @classmethod
    def full(cls, time_min: datetime, time_max: datetime, max_results: int = 250) -> "EventsQuery":
        return cls(time_min=time_min, time_max=time_max, single_events=True, max_results=max_results)

    @classmethod
    def delta(cls, sync_token: str, max_results: int = 250) -> "EventsQuery":
        return cls(sync_token=sync_token, show_deleted=True, max_results=max_results)

    def next_page(self, page_token: str) -> "EventsQuery":
        return self.model_copy(update={'page_token': page_token})


class EventsPage(BaseModel):
    """One page of events.list results."""

    items: List[RemoteEvent] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    next_sync_token: Optional[str] = None


class Occurrence(BaseModel):
    """A concrete, virtual instance of a recurring event."""

    parent_id: Optional[str]
    user_id: str
    external_id: Optional[str] = None
    title: str = ""
    description: str = ""
    start: datetime
    end: datetime
    timezone: Optional[str] = None
    is_virtual: bool = True


class WebhookNotification(BaseModel):
    """Correlation fields of an inbound push notification."""

    channel_id: Optional[str] = None
    resource_id: Optional[str] = None
    resource_state: Optional[str] = None
    message_number: Optional[str] = None


class WebhookResult(BaseModel):
    """What the webhook endpoint answers and what happened internally."""

    outcome: WebhookOutcome
    user_id: Optional[str] = None
    status_code: int = 200


class SyncReport(BaseModel):
    """Result of one sync attempt for one connection."""

    sync_id: UUID = Field(default_factory=uuid4)
    user_id: str
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = Field(None)
    mode: Optional[SyncMode] = Field(None)
    fallback_used: bool = Field(False, description="Cursor was rejected and a full sync ran")
    pages: int = Field(0)

    imported: int = Field(0)
    updated: int = Field(0)
    deleted: int = Field(0)
    unchanged: int = Field(0)
    skipped: int = Field(0)
    errors: List[str] = Field(default_factory=list)

    @property
    def total_writes(self) -> int:
        return self.imported + self.updated + self.deleted

    def record(self, action: MergeAction) -> None:
        if action == MergeAction.CREATED:
            self.imported += 1
        elif action == MergeAction.UPDATED:
            self.updated += 1
        elif action == MergeAction.DELETED:
            self.deleted += 1
        elif action == MergeAction.UNCHANGED:
            self.unchanged += 1
        else:
            self.skipped += 1


class SweepReport(BaseModel):
    """Aggregated result of a scheduled sweep over all connections."""

    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = Field(None)
    total: int = Field(0)
    synced: int = Field(0)
    skipped: int = Field(0)
    errors: int = Field(0)
    failures: Dict[str, str] = Field(default_factory=dict)


class SyncConfiguration(BaseModel):
    """Sync configuration model."""

    sync_past_months: int = Field(1, ge=0)
    sync_future_months: int = Field(6, ge=1)
    max_results_per_page: int = Field(250, ge=1, le=2500)
    instances_max_results: int = Field(100, ge=1, le=2500)
    recurring_mode: RecurringMode = Field(RecurringMode.INSTANCES)
    max_occurrences: int = Field(366, ge=1)
    retry_attempts: int = Field(3, ge=1)

    token_refresh_margin_seconds: int = Field(300, ge=0)
    webhook_dedup_seconds: int = Field(30, ge=0)
    manual_sync_cooldown_minutes: int = Field(5, ge=0)

    sweep_interval_minutes: int = Field(15, ge=1)
    sweep_min_interval_minutes: int = Field(10, ge=0)
    sweep_batch_size: int = Field(5, ge=1)
    sweep_batch_delay_seconds: float = Field(2.0, ge=0)

    webhook_ttl_days: int = Field(7, ge=1)
    webhook_renew_before_hours: int = Field(24, ge=0)
    remove_events_on_disconnect: bool = Field(False)

    def sync_window(self, now: Optional[datetime] = None):
        """Bounded window used by full sync and instance expansion."""
        now = now or utc_now()
        return (
            now - relativedelta(months=self.sync_past_months),
            now + relativedelta(months=self.sync_future_months),
        )
