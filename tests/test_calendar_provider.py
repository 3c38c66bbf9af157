import unittest
from datetime import date, datetime, timezone
from unittest import mock

from caldav.lib.error import AuthorizationError

from gaply.calendar_provider import CalDAVCalendarProvider, parse_event
from gaply.models import CalDAVConfig


def _ics(*lines: str) -> str:
    body = "\r\n".join(lines)
    return f"BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//test//EN\r\nBEGIN:VEVENT\r\n{body}\r\nEND:VEVENT\r\nEND:VCALENDAR\r\n"


class ParseEventTests(unittest.TestCase):
    def test_timed_event(self) -> None:
        event = parse_event(
            "work",
            _ics("UID:e1", "SUMMARY:Standup", "DTSTART:20240429T100000Z", "DTEND:20240429T103000Z"),
        )
        self.assertEqual(event.id, "e1")
        self.assertEqual(event.start, datetime(2024, 4, 29, 10, 0, tzinfo=timezone.utc))
        self.assertEqual(event.end, datetime(2024, 4, 29, 10, 30, tzinfo=timezone.utc))
        self.assertFalse(event.is_all_day)
        self.assertEqual((event.transparency, event.status, event.title), ("busy", "confirmed", "Standup"))

    def test_all_day_event_defaults_to_one_day(self) -> None:
        event = parse_event("home", _ics("UID:h1", "DTSTART;VALUE=DATE:20240429"))
        self.assertTrue(event.is_all_day)
        self.assertEqual((event.start, event.end), (date(2024, 4, 29), date(2024, 4, 30)))

    def test_duration_and_floating_time(self) -> None:
        event = parse_event("work", _ics("UID:d1", "DTSTART:20240429T090000", "DURATION:PT45M"))
        self.assertEqual(event.end, datetime(2024, 4, 29, 9, 45, tzinfo=timezone.utc))

    def test_transparency_sources(self) -> None:
        transparent = parse_event("w", _ics("UID:t1", "DTSTART:20240429T090000Z", "TRANSP:TRANSPARENT"))
        tentative = parse_event("w", _ics("UID:t2", "DTSTART:20240429T090000Z", "STATUS:TENTATIVE"))
        outlook = parse_event(
            "w", _ics("UID:t3", "DTSTART:20240429T090000Z", "X-MICROSOFT-CDO-BUSYSTATUS:OOF")
        )
        self.assertEqual(transparent.transparency, "free")
        self.assertEqual((tentative.transparency, tentative.status), ("tentative", "tentative"))
        self.assertEqual(outlook.transparency, "oof")

    def test_event_without_uid_is_ignored(self) -> None:
        self.assertIsNone(parse_event("w", _ics("DTSTART:20240429T090000Z")))


class CalDAVProviderTests(unittest.TestCase):
    def test_incomplete_config_has_no_permission(self) -> None:
        self.assertFalse(CalDAVCalendarProvider(CalDAVConfig()).request_permission())

    def test_authorization_failure_has_no_permission(self) -> None:
        config = CalDAVConfig(base_url="https://dav.example.com", username="u", password="bad")
        with mock.patch("gaply.calendar_provider.caldav.DAVClient") as client_cls:
            client_cls.return_value.principal.side_effect = AuthorizationError("401")
            self.assertFalse(CalDAVCalendarProvider(config).request_permission())

    def test_list_events_reads_each_calendar(self) -> None:
        config = CalDAVConfig(base_url="https://dav.example.com", username="u", password="p")
        resource = mock.Mock()
        resource.data = _ics("UID:e1", "DTSTART:20240429T100000Z", "DTEND:20240429T110000Z")
        calendar = mock.Mock()
        calendar.url = "https://dav.example.com/cal/work/"
        calendar.search.return_value = [resource]
        with mock.patch("gaply.calendar_provider.caldav.DAVClient") as client_cls:
            client_cls.return_value.principal.return_value.calendars.return_value = [calendar]
            provider = CalDAVCalendarProvider(config, source="google")
            self.assertTrue(provider.request_permission())
            self.assertEqual(provider.list_calendars(), ["https://dav.example.com/cal/work/"])
            events = provider.list_events(
                date(2024, 4, 29), date(2024, 4, 29), ["https://dav.example.com/cal/work/", "missing"]
            )
        self.assertEqual([(event.id, event.source) for event in events], [("e1", "google")])
        kwargs = calendar.search.call_args.kwargs
        self.assertEqual(kwargs["start"], datetime(2024, 4, 29, tzinfo=timezone.utc))
        self.assertEqual(kwargs["end"], datetime(2024, 4, 30, tzinfo=timezone.utc))
        self.assertTrue(kwargs["expand"])


if __name__ == "__main__":
    unittest.main()
