from __future__ import annotations

import logging
import re
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from gaply.errors import ValidationError

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
ROLLING_WINDOW_DAYS = 7

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
DEFAULT_WORKING_DAYS = frozenset(range(5))

ALL_DAY_BLOCK_MODES = {"ignore", "workday", "window"}
ALL_DAY_BLOCK_POSITIONS = {"start", "middle", "end"}
DEDUPE_STRATEGIES = {"auto", "prefer_google", "prefer_device", "none"}
BLOCK_SOURCES = {"device", "google"}
TRANSPARENCIES = {"busy", "free", "oof", "tentative"}
EVENT_STATUSES = {"confirmed", "tentative", "cancelled"}
GAP_MODIFIERS = {"system", "user", "calendar_sync"}
INACTIVE_TASK_STATUSES = {"completed", "deleted"}
SESSION_PHASES = {"cold", "warm"}

_CLOCK_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*(hours|hour|hrs|hr|h|minutes|minute|mins|min|m)")
_DURATION_FULL = re.compile(r"^(?:\s*\d+(?:\.\d+)?\s*(?:hours|hour|hrs|hr|h|minutes|minute|mins|min|m)\s*)+$")

# Source-system preference keys accepted at the boundary.
_PREFERENCE_ALIASES = {
    "calendar_work_start": "work_start",
    "calendar_work_end": "work_end",
    "calendar_working_days": "working_days",
    "calendar_min_gap": "min_gap_minutes",
    "calendar_buffer_time": "buffer_minutes",
    "calendar_all_day_block_mode": "all_day_block_mode",
    "calendar_all_day_fixed_block_minutes": "all_day_block_minutes",
    "calendar_all_day_fixed_block_start": "all_day_block_position",
    "calendar_block_tentative": "block_tentative",
    "calendar_dedupe_strategy": "dedupe_strategy",
    "show_device_calendar_busy": "subtract_busy_blocks",
    "device_calendar_included_ids": "included_calendar_ids",
    "show_device_calendar_titles": "show_calendar_titles",
}


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_tz(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_tz(value).isoformat()


def parse_iso_date(value: str | date | datetime | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        raise ValidationError(f"invalid date: {value!r}") from exc


def parse_clock_minutes(value: Any) -> int:
    """Parse ``HH:MM``, ``HH:MM:SS`` or an ISO datetime into minutes since midnight."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"invalid time: {value!r}")
    if isinstance(value, datetime):
        return value.hour * 60 + value.minute
    if isinstance(value, time):
        return value.hour * 60 + value.minute
    if isinstance(value, int):
        if 0 <= value <= MINUTES_PER_DAY:
            return value
        raise ValidationError(f"time out of range: {value!r}")
    text = str(value).strip()
    match = _CLOCK_PATTERN.match(text)
    if match is None and "T" in text:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"invalid time: {value!r}") from exc
        return parsed.hour * 60 + parsed.minute
    if match is None:
        raise ValidationError(f"invalid time: {value!r}")
    hours = int(match.group(1))
    minutes = int(match.group(2))
    if minutes > 59 or hours > 24 or (hours == 24 and minutes != 0):
        raise ValidationError(f"time out of range: {value!r}")
    return hours * 60 + minutes


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def parse_duration_minutes(value: Any) -> int:
    """Parse a duration (int minutes, ``HH:MM[:SS]``, ``"30 min"``, ``"1h 30m"``)."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        minutes = int(value)
    elif isinstance(value, timedelta):
        minutes = int(value.total_seconds() // 60)
    else:
        text = str(value).strip().lower()
        clock = _CLOCK_PATTERN.match(text)
        if clock is not None:
            minutes = int(clock.group(1)) * 60 + int(clock.group(2))
        elif text.isdigit():
            minutes = int(text)
        elif _DURATION_FULL.match(text):
            total = 0.0
            for amount, unit in _DURATION_PART.findall(text):
                total += float(amount) * (60 if unit.startswith("h") else 1)
            minutes = int(round(total))
        else:
            raise ValidationError(f"invalid duration: {value!r}")
    if minutes <= 0:
        raise ValidationError(f"duration must be positive: {value!r}")
    return minutes


def _weekday_index(token: Any) -> int | None:
    if isinstance(token, bool):
        return None
    if isinstance(token, int):
        return token if 0 <= token <= 6 else None
    text = str(token).strip().lower()
    if text.isdigit():
        number = int(text)
        return number if 0 <= number <= 6 else None
    if len(text) < 2:
        return None
    matches = [index for index, name in enumerate(WEEKDAY_NAMES) if name.startswith(text)]
    if len(matches) == 1:
        return matches[0]
    return None


def normalize_working_days(raw: Any) -> frozenset[int]:
    """Canonical weekday set (0=Monday) from lists, name->bool maps or comma strings."""
    if raw is None:
        return DEFAULT_WORKING_DAYS
    if isinstance(raw, str):
        tokens: Iterable[Any] = [part for part in re.split(r"[,\s]+", raw) if part]
    elif isinstance(raw, Mapping):
        tokens = [key for key, enabled in raw.items() if enabled]
    elif isinstance(raw, Iterable):
        tokens = list(raw)
    else:
        raise ValidationError(f"invalid working days: {raw!r}")
    days: set[int] = set()
    for token in tokens:
        index = _weekday_index(token)
        if index is None:
            logger.warning("Ignoring unknown weekday %r", token)
            continue
        days.add(index)
    return frozenset(days)


def canonical_preference_keys(data: Mapping[str, Any] | None) -> dict[str, Any]:
    """Rename source-system preference keys to their canonical names."""
    raw = dict(data or {})
    for alias, canonical in _PREFERENCE_ALIASES.items():
        if alias in raw:
            value = raw.pop(alias)
            raw.setdefault(canonical, value)
    return raw


def _choice(data: Mapping[str, Any], key: str, allowed: set[str], default: str) -> str:
    value = str(data.get(key, default) or default).strip().lower()
    if value not in allowed:
        logger.warning("Invalid %s %r, using %r", key, value, default)
        return default
    return value


def _non_negative_int(data: Mapping[str, Any], key: str, default: int) -> int:
    raw = data.get(key)
    if raw is None:
        return default
    try:
        return max(0, int(raw))
    except (TypeError, ValueError):
        logger.warning("Invalid %s %r, using %r", key, raw, default)
        return default


def _optional_clock(data: Mapping[str, Any], key: str, default: int) -> int | None:
    if key not in data:
        return default
    try:
        return parse_clock_minutes(data[key])
    except ValidationError:
        logger.warning("Preference %s is missing or malformed: %r", key, data[key])
        return None


@dataclass
class WorkPreferences:
    work_start: int | None = 9 * 60
    work_end: int | None = 17 * 60
    working_days: frozenset[int] = DEFAULT_WORKING_DAYS
    min_gap_minutes: int = 15
    buffer_minutes: int = 0
    all_day_block_mode: str = "workday"
    all_day_block_minutes: int = 30
    all_day_block_position: str = "start"
    block_tentative: bool = False
    dedupe_strategy: str = "auto"
    subtract_busy_blocks: bool = False
    included_calendar_ids: tuple[str, ...] = ()
    show_calendar_titles: bool = False
    timezone: str = "UTC"
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "WorkPreferences":
        raw = canonical_preference_keys(data)
        defaults = cls()
        try:
            working_days = normalize_working_days(raw.get("working_days"))
        except ValidationError:
            logger.warning("Invalid working_days %r, using defaults", raw.get("working_days"))
            working_days = defaults.working_days
        included = raw.get("included_calendar_ids") or []
        if isinstance(included, str):
            included = [part for part in included.split(",")]
        updated_at = None
        try:
            updated_at = parse_iso_datetime(raw.get("updated_at"))
        except (TypeError, ValueError):
            logger.warning("Invalid preferences updated_at %r", raw.get("updated_at"))
        return cls(
            work_start=_optional_clock(raw, "work_start", defaults.work_start),
            work_end=_optional_clock(raw, "work_end", defaults.work_end),
            working_days=working_days,
            min_gap_minutes=_non_negative_int(raw, "min_gap_minutes", defaults.min_gap_minutes),
            buffer_minutes=_non_negative_int(raw, "buffer_minutes", defaults.buffer_minutes),
            all_day_block_mode=_choice(raw, "all_day_block_mode", ALL_DAY_BLOCK_MODES, defaults.all_day_block_mode),
            all_day_block_minutes=_non_negative_int(raw, "all_day_block_minutes", defaults.all_day_block_minutes),
            all_day_block_position=_choice(
                raw, "all_day_block_position", ALL_DAY_BLOCK_POSITIONS, defaults.all_day_block_position
            ),
            block_tentative=bool(raw.get("block_tentative", False)),
            dedupe_strategy=_choice(raw, "dedupe_strategy", DEDUPE_STRATEGIES, defaults.dedupe_strategy),
            subtract_busy_blocks=bool(raw.get("subtract_busy_blocks", False)),
            included_calendar_ids=tuple(sorted({str(x).strip() for x in included if str(x).strip()})),
            show_calendar_titles=bool(raw.get("show_calendar_titles", False)),
            timezone=str(raw.get("timezone") or "UTC").strip() or "UTC",
            updated_at=updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["work_start"] = format_minutes(self.work_start) if self.work_start is not None else None
        payload["work_end"] = format_minutes(self.work_end) if self.work_end is not None else None
        payload["working_days"] = [WEEKDAY_NAMES[index] for index in sorted(self.working_days)]
        payload["included_calendar_ids"] = list(self.included_calendar_ids)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        return payload

    def is_working_day(self, target: date) -> bool:
        return target.weekday() in self.working_days

    def work_interval(self) -> tuple[int, int] | None:
        """Reconciled ``[start, end)`` in minutes; ``None`` when unusable."""
        if self.work_start is None or self.work_end is None:
            return None
        start, end = self.work_start, self.work_end
        if not 0 <= start < MINUTES_PER_DAY:
            return None
        if end <= start:
            end = MINUTES_PER_DAY
        return start, min(end, MINUTES_PER_DAY)


@dataclass
class Task:
    id: str
    title: str = ""
    due_date: date | None = None
    due_time: int | None = None
    duration: int | None = None
    status: str = "pending"
    updated_at: datetime | None = None
    deleted: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Task":
        task_id = str(data.get("id", "") or "").strip()
        if not task_id:
            raise ValidationError("task id is required")
        due_time_raw = data.get("due_time", data.get("dueTime"))
        duration_raw = data.get("duration")
        try:
            updated_at = parse_iso_datetime(data.get("updated_at"))
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"invalid updated_at for task {task_id}") from exc
        return cls(
            id=task_id,
            title=str(data.get("title", "") or ""),
            due_date=parse_iso_date(data.get("due_date", data.get("dueDate"))),
            due_time=parse_clock_minutes(due_time_raw) if due_time_raw not in (None, "") else None,
            duration=parse_duration_minutes(duration_raw) if duration_raw not in (None, "") else None,
            status=str(data.get("status", "pending") or "pending").strip().lower(),
            updated_at=updated_at,
            deleted=bool(data.get("deleted", False) or data.get("deleted_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "due_time": format_minutes(self.due_time) if self.due_time is not None else None,
            "duration": self.duration,
            "status": self.status,
            "updated_at": serialize_datetime(self.updated_at),
            "deleted": self.deleted,
        }

    @property
    def is_active(self) -> bool:
        return not self.deleted and self.status not in INACTIVE_TASK_STATUSES

    def interval(self) -> tuple[int, int] | None:
        if self.due_time is None or self.duration is None:
            return None
        if self.duration <= 0:
            raise ValidationError(f"task {self.id} has non-positive duration")
        return self.due_time, self.due_time + self.duration


@dataclass
class Gap:
    date: date
    start: int
    end: int
    id: str = field(default_factory=new_id)
    duration_minutes: int = field(init=False, default=0)
    parent_gap_id: str | None = None
    origin_gap_id: str | None = None
    modified_by: str = "system"
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValidationError(f"gap end must be after start: {self.start}..{self.end}")
        self.duration_minutes = self.end - self.start

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Gap":
        gap_date = parse_iso_date(data.get("date"))
        if gap_date is None:
            raise ValidationError("gap date is required")
        modified_by = str(data.get("modified_by", "system") or "system")
        if modified_by not in GAP_MODIFIERS:
            modified_by = "system"
        try:
            created_at = parse_iso_datetime(data.get("created_at")) or utc_now()
            updated_at = parse_iso_datetime(data.get("updated_at", data.get("last_modified_at"))) or created_at
        except (TypeError, ValueError) as exc:
            raise ValidationError("invalid gap timestamps") from exc
        return cls(
            id=str(data.get("id") or new_id()),
            date=gap_date,
            start=parse_clock_minutes(data.get("start", data.get("start_time"))),
            end=parse_clock_minutes(data.get("end", data.get("end_time"))),
            parent_gap_id=data.get("parent_gap_id") or None,
            origin_gap_id=data.get("origin_gap_id") or None,
            modified_by=modified_by,
            created_at=created_at,
            updated_at=updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "start": format_minutes(self.start),
            "end": format_minutes(self.end),
            "duration_minutes": self.duration_minutes,
            "parent_gap_id": self.parent_gap_id,
            "origin_gap_id": self.origin_gap_id,
            "modified_by": self.modified_by,
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
        }

    def fragment(self, start: int, end: int, modified_by: str, now: datetime | None = None) -> "Gap":
        """Remainder piece of this gap, keeping lineage back to the original."""
        return Gap(
            date=self.date,
            start=start,
            end=end,
            parent_gap_id=self.id,
            origin_gap_id=self.origin_gap_id or self.id,
            modified_by=modified_by,
            created_at=self.created_at,
            updated_at=now or utc_now(),
        )

    def trimmed(self, start: int, end: int, now: datetime | None = None) -> "Gap":
        return replace(self, start=start, end=end, updated_at=now or utc_now())

    def overlaps(self, start: int, end: int) -> bool:
        return start < self.end and end > self.start


@dataclass
class BusyBlock:
    date: date
    start: int
    end: int
    source: str = "device"
    calendar_id: str = ""
    transparency: str = "busy"
    status: str = "confirmed"
    is_all_day: bool = False
    uid: str = ""
    title: str = ""
    last_synced_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.start < self.end:
            raise ValidationError(f"busy block end must be after start: {self.start}..{self.end}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BusyBlock":
        block_date = parse_iso_date(data.get("date"))
        if block_date is None:
            raise ValidationError("busy block date is required")
        try:
            synced = parse_iso_datetime(data.get("last_synced_at"))
        except (TypeError, ValueError):
            synced = None
        return cls(
            date=block_date,
            start=parse_clock_minutes(data.get("start", data.get("start_time"))),
            end=parse_clock_minutes(data.get("end", data.get("end_time"))),
            source=str(data.get("source", "device") or "device"),
            calendar_id=str(data.get("calendar_id", data.get("calendarId", "")) or ""),
            transparency=str(data.get("transparency", "busy") or "busy"),
            status=str(data.get("status", "confirmed") or "confirmed"),
            is_all_day=bool(data.get("is_all_day", data.get("isAllDay", False))),
            uid=str(data.get("uid", "") or ""),
            title=str(data.get("title", "") or ""),
            last_synced_at=synced,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["date"] = self.date.isoformat()
        payload["start"] = format_minutes(self.start)
        payload["end"] = format_minutes(self.end)
        payload["last_synced_at"] = serialize_datetime(self.last_synced_at)
        return payload

    @property
    def key(self) -> tuple[date, int, int]:
        return self.date, self.start, self.end

    @property
    def identity(self) -> str:
        return self.uid or f"{self.date.isoformat()}_{self.start}_{self.end}_{self.source}"


@dataclass
class RawEvent:
    id: str
    calendar_id: str
    start: datetime | date
    end: datetime | date
    is_all_day: bool = False
    transparency: str = "busy"
    status: str = "confirmed"
    title: str = ""
    location: str = ""
    notes: str = ""
    url: str = ""
    source: str = "device"


@dataclass(frozen=True)
class RollingWindow:
    start: date
    end: date

    @classmethod
    def around(cls, today: date, days: int = ROLLING_WINDOW_DAYS) -> "RollingWindow":
        span = timedelta(days=max(0, days))
        return cls(start=today - span, end=today + span)

    def contains(self, target: date) -> bool:
        return self.start <= target <= self.end

    def dates(self) -> list[date]:
        total = (self.end - self.start).days
        return [self.start + timedelta(days=offset) for offset in range(total + 1)]

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def resolve_timezone(name: str) -> ZoneInfo | timezone:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return timezone.utc


@dataclass(frozen=True)
class SessionContext:
    """Per-run planner context: today, the rolling window and the loading phase."""

    today: date
    window: RollingWindow
    phase: str = "cold"

    @classmethod
    def begin(cls, now: datetime, tz_name: str = "UTC", window_days: int = ROLLING_WINDOW_DAYS) -> "SessionContext":
        today = ensure_tz(now).astimezone(resolve_timezone(tz_name)).date()
        return cls(today=today, window=RollingWindow.around(today, window_days), phase="cold")

    def warm(self) -> "SessionContext":
        return replace(self, phase="warm")


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
        )


@dataclass
class RemoteConfig:
    base_url: str = ""
    api_token: str = ""
    user_id: str = ""
    timeout_seconds: int = 15

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RemoteConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            api_token=str(data.get("api_token", "")).strip(),
            user_id=str(data.get("user_id", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 15))),
        )


@dataclass
class CalendarFetchConfig:
    cache_ttl_minutes: int = 60
    today_timeout_seconds: float = 5.0
    range_timeout_seconds: float = 15.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarFetchConfig":
        data = data or {}
        return cls(
            cache_ttl_minutes=max(1, int(data.get("cache_ttl_minutes", 60))),
            today_timeout_seconds=max(0.1, float(data.get("today_timeout_seconds", 5.0))),
            range_timeout_seconds=max(0.1, float(data.get("range_timeout_seconds", 15.0))),
        )


@dataclass
class SyncConfig:
    window_days: int = ROLLING_WINDOW_DAYS
    interval_seconds: int = 300
    timezone: str = "UTC"
    debounce_seconds: float = 2.0
    max_workers: int = 3

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            window_days=max(1, int(data.get("window_days", ROLLING_WINDOW_DAYS))),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            debounce_seconds=max(0.0, float(data.get("debounce_seconds", 2.0))),
            max_workers=max(1, int(data.get("max_workers", 3))),
        )


@dataclass
class CacheLimitsConfig:
    max_tasks: int = 1000
    max_gaps: int = 5000
    max_busy_blocks: int = 2000
    max_validation_results: int = 500
    max_storage_bytes: int = 50 * 1024 * 1024
    cleanup_threshold: float = 0.8
    hard_ceiling: float = 1.2
    eviction_fraction: float = 0.1

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CacheLimitsConfig":
        data = data or {}
        threshold = float(data.get("cleanup_threshold", 0.8))
        fraction = float(data.get("eviction_fraction", 0.1))
        return cls(
            max_tasks=max(1, int(data.get("max_tasks", 1000))),
            max_gaps=max(1, int(data.get("max_gaps", 5000))),
            max_busy_blocks=max(1, int(data.get("max_busy_blocks", 2000))),
            max_validation_results=max(1, int(data.get("max_validation_results", 500))),
            max_storage_bytes=max(1, int(data.get("max_storage_bytes", 50 * 1024 * 1024))),
            cleanup_threshold=min(1.0, max(0.05, threshold)),
            hard_ceiling=max(1.0, float(data.get("hard_ceiling", 1.2))),
            eviction_fraction=min(1.0, max(0.01, fraction)),
        )

    def collection_limits(self) -> dict[str, int]:
        return {
            "tasks": self.max_tasks,
            "gaps": self.max_gaps,
            "busy_blocks": self.max_busy_blocks,
            "validation_results": self.max_validation_results,
        }


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    calendar: CalendarFetchConfig = field(default_factory=CalendarFetchConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    cache_limits: CacheLimitsConfig = field(default_factory=CacheLimitsConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            remote=RemoteConfig.from_dict(data.get("remote")),
            calendar=CalendarFetchConfig.from_dict(data.get("calendar")),
            sync=SyncConfig.from_dict(data.get("sync")),
            cache_limits=CacheLimitsConfig.from_dict(data.get("cache_limits")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    changes_applied: int
    conflicts: int
    trigger: str
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "changes_applied": self.changes_applied,
            "conflicts": self.conflicts,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
