from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, Protocol

import caldav
from caldav.lib.error import AuthorizationError
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from gaply.errors import ProviderError
from gaply.models import CalDAVConfig, RawEvent

logger = logging.getLogger(__name__)

_BUSY_STATUS = {"FREE": "free", "TENTATIVE": "tentative", "OOF": "oof", "BUSY": "busy"}
_EVENT_STATUS = {"CONFIRMED": "confirmed", "TENTATIVE": "tentative", "CANCELLED": "cancelled"}


class CalendarProvider(Protocol):
    def request_permission(self) -> bool: ...

    def list_calendars(self) -> list[str]: ...

    def list_events(self, start: date, end: date, calendar_ids: Iterable[str]) -> list[RawEvent]: ...


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _transparency(vevent: ICEvent) -> str:
    busy_status = str(vevent.get("X-MICROSOFT-CDO-BUSYSTATUS", "")).strip().upper()
    if busy_status in _BUSY_STATUS:
        return _BUSY_STATUS[busy_status]
    if str(vevent.get("TRANSP", "OPAQUE")).strip().upper() == "TRANSPARENT":
        return "free"
    if str(vevent.get("STATUS", "")).strip().upper() == "TENTATIVE":
        return "tentative"
    return "busy"


def _decoded(vevent: ICEvent, name: str) -> Any:
    return vevent.decoded(name) if vevent.get(name) is not None else None


def parse_event(calendar_id: str, raw_data: Any, source: str = "device") -> RawEvent | None:
    """Read one iCalendar resource into a ``RawEvent``; ``None`` when it has no usable VEVENT."""
    vevent = _first_vevent(ICalendar.from_ical(_decode_raw_ical(raw_data)))
    if vevent is None:
        return None
    uid = str(vevent.get("UID", "")).strip()
    start = _decoded(vevent, "DTSTART")
    if not uid or start is None:
        return None
    end = _decoded(vevent, "DTEND")
    all_day = isinstance(start, date) and not isinstance(start, datetime)
    if end is None:
        duration = _decoded(vevent, "DURATION")
        if isinstance(duration, timedelta):
            end = start + duration
        else:
            end = start + timedelta(days=1) if all_day else start + timedelta(hours=1)
    if isinstance(start, datetime) and start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if isinstance(end, datetime) and end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    return RawEvent(
        id=uid,
        calendar_id=calendar_id,
        start=start,
        end=end,
        is_all_day=all_day,
        transparency=_transparency(vevent),
        status=_EVENT_STATUS.get(str(vevent.get("STATUS", "CONFIRMED")).strip().upper(), "confirmed"),
        title=str(vevent.get("SUMMARY", "")).strip(),
        location=str(vevent.get("LOCATION", "")).strip(),
        notes=str(vevent.get("DESCRIPTION", "")).strip(),
        url=str(vevent.get("URL", "")).strip(),
        source=source,
    )


class CalDAVCalendarProvider:
    """Read-only calendar access over CalDAV."""

    def __init__(self, config: CalDAVConfig, source: str = "device") -> None:
        self.config = config
        self.source = source
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise ProviderError("CalDAV config is incomplete.")
        client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = client.principal()

    def request_permission(self) -> bool:
        try:
            self._connect()
        except ProviderError:
            return False
        except AuthorizationError as exc:
            logger.warning("CalDAV access denied: %s", exc)
            return False
        return True

    def list_calendars(self) -> list[str]:
        self._connect()
        self._calendar_cache = {str(calendar.url): calendar for calendar in self._principal.calendars()}
        return list(self._calendar_cache)

    def list_events(self, start: date, end: date, calendar_ids: Iterable[str]) -> list[RawEvent]:
        """Events overlapping the inclusive date range ``start..end``."""
        self._connect()
        if not self._calendar_cache:
            self.list_calendars()
        range_start = datetime.combine(start, time.min, tzinfo=timezone.utc)
        range_end = datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc)
        events: list[RawEvent] = []
        for calendar_id in calendar_ids:
            calendar = self._calendar_cache.get(calendar_id)
            if calendar is None:
                logger.warning("Calendar not found: %s", calendar_id)
                continue
            for resource in calendar.search(start=range_start, end=range_end, event=True, expand=True):
                try:
                    event = parse_event(calendar_id, resource.data, self.source)
                except ValueError as exc:
                    logger.warning("Skipping unreadable event in %s: %s", calendar_id, exc)
                    continue
                if event is not None:
                    events.append(event)
        return events
