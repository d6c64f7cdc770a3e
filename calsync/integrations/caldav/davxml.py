"""
WebDAV / CalDAV XML request bodies and multistatus parsing.

Builders return UTF-8 encoded XML; parsers take raw response bytes and
return plain data. Nothing in this module performs I/O.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import unquote

from lxml import etree

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"
CALSERVER_NS = "http://calendarserver.org/ns/"
APPLE_ICAL_NS = "http://apple.com/ns/ical/"

NSMAP = {
    "d": DAV_NS,
    "c": CALDAV_NS,
    "cs": CALSERVER_NS,
    "ic": APPLE_ICAL_NS,
}


def _tag(namespace: str, name: str) -> str:
    return f"{{{namespace}}}{name}"


# Properties used by discovery and sync
CURRENT_USER_PRINCIPAL = _tag(DAV_NS, "current-user-principal")
CALENDAR_HOME_SET = _tag(CALDAV_NS, "calendar-home-set")
RESOURCETYPE = _tag(DAV_NS, "resourcetype")
DISPLAYNAME = _tag(DAV_NS, "displayname")
GETETAG = _tag(DAV_NS, "getetag")
SYNC_TOKEN = _tag(DAV_NS, "sync-token")
GETCTAG = _tag(CALSERVER_NS, "getctag")
CALENDAR_COLOR = _tag(APPLE_ICAL_NS, "calendar-color")
CALENDAR_DESCRIPTION = _tag(CALDAV_NS, "calendar-description")
SUPPORTED_COMPONENTS = _tag(CALDAV_NS, "supported-calendar-component-set")
CALENDAR_DATA = _tag(CALDAV_NS, "calendar-data")
CALENDAR_RESOURCE = _tag(CALDAV_NS, "calendar")
HREF = _tag(DAV_NS, "href")

CALENDAR_PROPS = (
    RESOURCETYPE,
    DISPLAYNAME,
    GETCTAG,
    CALENDAR_COLOR,
    CALENDAR_DESCRIPTION,
    SUPPORTED_COMPONENTS,
)


@dataclass
class DavResponse:
    """One ``DAV:response`` of a multistatus body."""

    href: str
    status: int = 200
    props: dict[str, etree._Element] = field(default_factory=dict)

    def text(self, tag: str) -> Optional[str]:
        """Text content of a property, stripped; None when missing or empty."""
        element = self.props.get(tag)
        if element is None or element.text is None:
            return None
        return element.text.strip() or None

    def href_of(self, tag: str) -> Optional[str]:
        """First ``DAV:href`` inside a property (principal and home-set values)."""
        element = self.props.get(tag)
        if element is None:
            return None
        href = element.find(HREF)
        if href is None or not href.text:
            return None
        return unquote(href.text.strip())


def build_propfind(props: tuple[str, ...]) -> bytes:
    """PROPFIND body requesting the given Clark-notation properties."""
    propfind = etree.Element(_tag(DAV_NS, "propfind"), nsmap=NSMAP)
    prop = etree.SubElement(propfind, _tag(DAV_NS, "prop"))
    for name in props:
        etree.SubElement(prop, name)
    return etree.tostring(propfind, encoding="utf-8", xml_declaration=True)


def format_time_range(value: datetime) -> str:
    """UTC basic format used by CalDAV time-range filters."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def build_calendar_query(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> bytes:
    """
    calendar-query REPORT body for VEVENT objects with their data and ETag.

    Without bounds every event object in the collection matches.
    """
    query = etree.Element(_tag(CALDAV_NS, "calendar-query"), nsmap=NSMAP)
    prop = etree.SubElement(query, _tag(DAV_NS, "prop"))
    etree.SubElement(prop, GETETAG)
    etree.SubElement(prop, CALENDAR_DATA)

    filter_elem = etree.SubElement(query, _tag(CALDAV_NS, "filter"))
    vcalendar = etree.SubElement(filter_elem, _tag(CALDAV_NS, "comp-filter"), name="VCALENDAR")
    vevent = etree.SubElement(vcalendar, _tag(CALDAV_NS, "comp-filter"), name="VEVENT")

    if start is not None or end is not None:
        time_range = etree.SubElement(vevent, _tag(CALDAV_NS, "time-range"))
        if start is not None:
            time_range.set("start", format_time_range(start))
        if end is not None:
            time_range.set("end", format_time_range(end))

    return etree.tostring(query, encoding="utf-8", xml_declaration=True)


def _status_code(status: Optional[str]) -> int:
    """Parse ``HTTP/1.1 200 OK`` into 200."""
    if not status:
        return 200
    parts = status.split()
    if len(parts) >= 2 and parts[1].isdigit():
        return int(parts[1])
    return 200


def parse_multistatus(body: bytes) -> list[DavResponse]:
    """
    Parse a 207 Multi-Status body.

    Properties reported with a non-2xx propstat status are left out.

    Raises:
        etree.XMLSyntaxError: If the body is not XML
    """
    if not body or not body.strip():
        return []

    root = etree.fromstring(body, etree.XMLParser(resolve_entities=False, no_network=True))
    responses = []

    for response in root.iter(_tag(DAV_NS, "response")):
        href_elem = response.find(HREF)
        href = unquote((href_elem.text or "").strip()) if href_elem is not None else ""
        status_elem = response.find(_tag(DAV_NS, "status"))
        result = DavResponse(
            href=href,
            status=_status_code(status_elem.text if status_elem is not None else None),
        )

        for propstat in response.findall(_tag(DAV_NS, "propstat")):
            propstat_status = propstat.find(_tag(DAV_NS, "status"))
            code = _status_code(propstat_status.text if propstat_status is not None else None)
            if not 200 <= code < 300:
                continue
            prop = propstat.find(_tag(DAV_NS, "prop"))
            if prop is None:
                continue
            for child in prop:
                result.props[child.tag] = child

        responses.append(result)

    return responses


def is_calendar(response: DavResponse) -> bool:
    """Whether a collection's resourcetype marks it as a calendar."""
    resourcetype = response.props.get(RESOURCETYPE)
    return resourcetype is not None and resourcetype.find(CALENDAR_RESOURCE) is not None


def supported_components(response: DavResponse) -> list[str]:
    """Component names (VEVENT, VTODO, ...) a calendar collection accepts."""
    component_set = response.props.get(SUPPORTED_COMPONENTS)
    if component_set is None:
        return []
    return [
        comp.get("name", "").upper()
        for comp in component_set.findall(_tag(CALDAV_NS, "comp"))
        if comp.get("name")
    ]
