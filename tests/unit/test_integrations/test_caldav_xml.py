"""Tests for WebDAV/CalDAV XML building and parsing."""

from datetime import datetime, timedelta, timezone

import pytest
from lxml import etree

from calsync.integrations.caldav import davxml

MULTISTATUS = b"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav" xmlns:cs="http://calendarserver.org/ns/">
  <d:response>
    <d:href>/calendars/me/Work%20Stuff/</d:href>
    <d:propstat>
      <d:prop>
        <d:resourcetype><d:collection/><c:calendar/></d:resourcetype>
        <d:displayname> Work </d:displayname>
        <cs:getctag>ctag-9</cs:getctag>
        <c:supported-calendar-component-set>
          <c:comp name="VEVENT"/><c:comp name="vtodo"/>
        </c:supported-calendar-component-set>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
    <d:propstat>
      <d:prop><d:sync-token/></d:prop>
      <d:status>HTTP/1.1 404 Not Found</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/calendars/me/</d:href>
    <d:propstat>
      <d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""


class TestParseMultistatus:
    """Tests for multistatus parsing."""

    def test_properties_and_href(self):
        """Hrefs are unquoted and text is stripped."""
        responses = davxml.parse_multistatus(MULTISTATUS)

        assert len(responses) == 2
        calendar = responses[0]
        assert calendar.href == "/calendars/me/Work Stuff/"
        assert calendar.text(davxml.DISPLAYNAME) == "Work"
        assert calendar.text(davxml.GETCTAG) == "ctag-9"

    def test_failed_propstat_skipped(self):
        """Properties reported as 404 are absent."""
        calendar = davxml.parse_multistatus(MULTISTATUS)[0]
        assert davxml.SYNC_TOKEN not in calendar.props
        assert calendar.text(davxml.SYNC_TOKEN) is None

    def test_calendar_detection(self):
        calendar, home = davxml.parse_multistatus(MULTISTATUS)
        assert davxml.is_calendar(calendar) is True
        assert davxml.is_calendar(home) is False

    def test_supported_components(self):
        calendar = davxml.parse_multistatus(MULTISTATUS)[0]
        assert davxml.supported_components(calendar) == ["VEVENT", "VTODO"]

    def test_empty_body(self):
        assert davxml.parse_multistatus(b"  ") == []

    def test_malformed_body(self):
        with pytest.raises(etree.XMLSyntaxError):
            davxml.parse_multistatus(b"<not-closed>")

    def test_href_of(self):
        body = (
            b'<d:multistatus xmlns:d="DAV:"><d:response><d:href>/</d:href><d:propstat><d:prop>'
            b"<d:current-user-principal><d:href>/principals/me/</d:href></d:current-user-principal>"
            b"</d:prop><d:status>HTTP/1.1 200 OK</d:status></d:propstat></d:response></d:multistatus>"
        )
        response = davxml.parse_multistatus(body)[0]
        assert response.href_of(davxml.CURRENT_USER_PRINCIPAL) == "/principals/me/"


class TestBuilders:
    """Tests for request body builders."""

    def test_propfind(self):
        body = davxml.build_propfind((davxml.GETCTAG, davxml.SYNC_TOKEN))
        root = etree.fromstring(body)
        prop = root.find(f"{{{davxml.DAV_NS}}}prop")
        assert [child.tag for child in prop] == [davxml.GETCTAG, davxml.SYNC_TOKEN]

    def test_calendar_query_with_range(self):
        """Bounds are rendered in UTC basic format."""
        start = datetime(2026, 3, 1, 1, 0, tzinfo=timezone(timedelta(hours=1)))
        body = davxml.build_calendar_query(start, datetime(2026, 4, 1))

        root = etree.fromstring(body)
        time_range = next(root.iter(f"{{{davxml.CALDAV_NS}}}time-range"))
        assert time_range.get("start") == "20260301T000000Z"
        assert time_range.get("end") == "20260401T000000Z"

    def test_calendar_query_unbounded(self):
        root = etree.fromstring(davxml.build_calendar_query())
        assert list(root.iter(f"{{{davxml.CALDAV_NS}}}time-range")) == []
        filters = [el.get("name") for el in root.iter(f"{{{davxml.CALDAV_NS}}}comp-filter")]
        assert filters == ["VCALENDAR", "VEVENT"]
