"""
CalDAV test fixtures.

Provides an in-process fake CalDAV server served through
httpx.MockTransport, so client and provider tests exercise real
request/response handling without a network.
"""

from typing import Optional
from xml.sax.saxutils import escape

import httpx
import pytest

from calsync.auth.credentials import AccountCredentials, CalDAVCredentials
from calsync.config import Settings
from calsync.integrations.caldav.pool import CalDAVConnectionPool

SERVER_URL = "https://dav.example.com/"
PRINCIPAL_PATH = "/principals/me/"
HOME_PATH = "/calendars/me/"
WORK_PATH = "/calendars/me/work/"
TASKS_PATH = "/calendars/me/tasks/"
WORK_URL = "https://dav.example.com/calendars/me/work/"

MULTISTATUS_OPEN = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav" '
    'xmlns:cs="http://calendarserver.org/ns/" xmlns:ic="http://apple.com/ns/ical/">'
)


def dav_response(href: str, props: str, status: str = "HTTP/1.1 200 OK") -> str:
    return (
        f"<d:response><d:href>{href}</d:href>"
        f"<d:propstat><d:prop>{props}</d:prop><d:status>{status}</d:status></d:propstat>"
        f"</d:response>"
    )


def multistatus(*responses: str) -> httpx.Response:
    body = MULTISTATUS_OPEN + "".join(responses) + "</d:multistatus>"
    return httpx.Response(207, content=body.encode("utf-8"), headers={"Content-Type": "application/xml"})


def vevent(uid: str, summary: str = "Meeting", extra: str = "") -> str:
    """A minimal VCALENDAR with one VEVENT."""
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        "DTSTART:20260302T100000Z",
        "DTEND:20260302T110000Z",
        f"SUMMARY:{summary}",
    ]
    if extra:
        lines.extend(extra.split("\n"))
    lines += ["END:VEVENT", "END:VCALENDAR"]
    return "\r\n".join(lines) + "\r\n"


class FakeDavServer:
    """
    Minimal CalDAV server: one principal, a work calendar and a task list.

    Objects live in ``objects`` keyed by path as (etag, data). Every write
    bumps the work calendar's ctag. ``requests`` records every request.
    """

    work_url = WORK_URL
    vevent = staticmethod(vevent)

    def __init__(self):
        self.ctag = "ctag-1"
        self.objects: dict[str, tuple[str, str]] = {}
        self.requests: list[httpx.Request] = []
        self.status_override: Optional[int] = None
        self._etag_counter = 0

    def add_object(self, name: str, data: str) -> str:
        etag = self._next_etag()
        self.objects[f"{WORK_PATH}{name}"] = (etag, data)
        return etag

    def _next_etag(self) -> str:
        self._etag_counter += 1
        return f'"etag-{self._etag_counter}"'

    def _bump(self) -> None:
        self.ctag = f"ctag-{int(self.ctag.split('-')[1]) + 1}"

    def requests_for(self, method: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_override is not None:
            return httpx.Response(self.status_override)

        path = request.url.path
        method = request.method

        if method == "PROPFIND":
            return self._propfind(path, request.headers.get("Depth", "0"))
        if method == "REPORT" and path == WORK_PATH:
            return multistatus(*(
                dav_response(
                    object_path,
                    f"<d:getetag>{escape(etag)}</d:getetag>"
                    f"<c:calendar-data>{escape(data)}</c:calendar-data>",
                )
                for object_path, (etag, data) in self.objects.items()
            ))
        if method == "GET" and path in self.objects:
            etag, data = self.objects[path]
            return httpx.Response(200, text=data, headers={"ETag": etag})
        if method == "PUT":
            return self._put(path, request)
        if method == "DELETE":
            return self._delete(path, request)
        return httpx.Response(404)

    def _propfind(self, path: str, depth: str) -> httpx.Response:
        if path in ("/", "/.well-known/caldav"):
            return multistatus(dav_response(
                path, f"<d:current-user-principal><d:href>{PRINCIPAL_PATH}</d:href></d:current-user-principal>"
            ))
        if path == PRINCIPAL_PATH:
            return multistatus(dav_response(
                path, f"<c:calendar-home-set><d:href>{HOME_PATH}</d:href></c:calendar-home-set>"
            ))
        if path == HOME_PATH and depth == "1":
            return multistatus(
                dav_response(HOME_PATH, "<d:resourcetype><d:collection/></d:resourcetype>"),
                dav_response(
                    WORK_PATH,
                    "<d:resourcetype><d:collection/><c:calendar/></d:resourcetype>"
                    "<d:displayname>Work</d:displayname>"
                    "<ic:calendar-color>#ff8800FF</ic:calendar-color>"
                    f"<cs:getctag>{self.ctag}</cs:getctag>"
                    '<c:supported-calendar-component-set><c:comp name="VEVENT"/></c:supported-calendar-component-set>',
                ),
                dav_response(
                    TASKS_PATH,
                    "<d:resourcetype><d:collection/><c:calendar/></d:resourcetype>"
                    "<d:displayname>Tasks</d:displayname>"
                    '<c:supported-calendar-component-set><c:comp name="VTODO"/></c:supported-calendar-component-set>',
                ),
            )
        if path == WORK_PATH:
            return multistatus(
                dav_response(path, f"<cs:getctag>{self.ctag}</cs:getctag>"),
                dav_response(path, "<d:sync-token/>", status="HTTP/1.1 404 Not Found"),
            )
        return httpx.Response(404)

    def _put(self, path: str, request: httpx.Request) -> httpx.Response:
        existing = self.objects.get(path)
        if request.headers.get("If-None-Match") == "*" and existing is not None:
            return httpx.Response(412)
        if_match = request.headers.get("If-Match")
        if if_match is not None and (existing is None or existing[0] != if_match):
            return httpx.Response(412)
        etag = self._next_etag()
        self.objects[path] = (etag, request.content.decode("utf-8"))
        self._bump()
        return httpx.Response(201 if existing is None else 204, headers={"ETag": etag})

    def _delete(self, path: str, request: httpx.Request) -> httpx.Response:
        existing = self.objects.get(path)
        if existing is None:
            return httpx.Response(404)
        if_match = request.headers.get("If-Match")
        if if_match is not None and existing[0] != if_match:
            return httpx.Response(412)
        del self.objects[path]
        self._bump()
        return httpx.Response(204)


@pytest.fixture
def dav_server() -> FakeDavServer:
    return FakeDavServer()


@pytest.fixture
def dav_transport(dav_server) -> httpx.MockTransport:
    return httpx.MockTransport(dav_server.handler)


@pytest.fixture
def dav_credentials() -> CalDAVCredentials:
    return CalDAVCredentials(server_url=SERVER_URL, username="me", password="secret")


@pytest.fixture
def dav_pool(dav_transport, dav_credentials, caldav_account) -> CalDAVConnectionPool:
    credentials = AccountCredentials(caldav={caldav_account.id: dav_credentials})
    return CalDAVConnectionPool(
        credentials,
        settings=Settings(_env_file=None, caldav_user_agent="calsync-tests"),
        transport=dav_transport,
    )
