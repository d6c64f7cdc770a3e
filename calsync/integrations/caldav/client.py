"""
CalDAV client wrapper with retry and error handling.

Speaks WebDAV over httpx: PROPFIND for discovery and collection tags,
calendar-query REPORT for listing objects, PUT/DELETE with ETag
preconditions for mutations.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from urllib.parse import urljoin

import httpx
from lxml import etree
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
)

from calsync.auth.credentials import CalDAVCredentials
from calsync.integrations.caldav import davxml
from calsync.integrations.exceptions import (
    AuthError,
    CalendarSyncError,
    ConflictError,
    NotFoundError,
    RateLimitError,
    TransientNetworkError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
WELL_KNOWN_PATH = "/.well-known/caldav"


@dataclass
class DavCalendar:
    """A calendar collection as reported by the server."""

    url: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    ctag: Optional[str] = None
    components: list[str] = field(default_factory=list)


@dataclass
class CalendarObject:
    """A calendar object resource (one .ics file)."""

    url: str
    etag: Optional[str]
    data: str


def _is_retryable_error(exception: BaseException) -> bool:
    """Check if an exception should trigger a retry."""
    return isinstance(exception, CalendarSyncError) and exception.retryable


def _raise_for_status(response: httpx.Response, action: str) -> None:
    """Convert an unsuccessful response to the appropriate CalendarSyncError."""
    status = response.status_code
    if status < 400:
        return

    if status in (401, 403):
        raise AuthError(
            f"CalDAV server refused {action} ({status}) - check username and password"
        )
    elif status == 404:
        raise NotFoundError(f"CalDAV resource not found during {action}")
    elif status in (409, 412):
        raise ConflictError(
            f"CalDAV object changed on the server during {action} ({status})"
        )
    elif status in (400, 415, 422):
        raise ValidationError(f"CalDAV server rejected {action} ({status}): {response.text}")
    elif status == 429:
        raise RateLimitError(f"CalDAV server rate limited {action}")
    elif status >= 500:
        raise TransientNetworkError(f"CalDAV server unavailable during {action} ({status})")
    else:
        raise CalendarSyncError(f"CalDAV {action} failed ({status}): {response.text}")


_retry_policy = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_retryable_error),
    reraise=True,
)


class CalDAVClient:
    """
    Authenticated connection to one CalDAV server.

    Provides:
    - Principal and calendar-home discovery (cached after the first lookup)
    - Calendar listing with collection tags
    - Time-ranged and unbounded object listing
    - ETag-guarded PUT and DELETE
    """

    def __init__(
        self,
        credentials: CalDAVCredentials,
        user_agent: str = "calsync",
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            credentials: Server URL and login
            user_agent: User-Agent header value
            timeout: Per-request timeout in seconds
            transport: Custom httpx transport (tests)
        """
        self.server_url = credentials.server_url.rstrip("/") + "/"
        self.username = credentials.username
        self._http = httpx.AsyncClient(
            auth=httpx.BasicAuth(credentials.username, credentials.password),
            headers={"User-Agent": user_agent},
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )
        self._home_url: Optional[str] = None

    @_retry_policy
    async def _request(
        self,
        method: str,
        url: str,
        action: str,
        content: Optional[bytes] = None,
        headers: Optional[dict] = None,
    ) -> httpx.Response:
        try:
            response = await self._http.request(method, url, content=content, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"CalDAV {action} timed out", original_error=e)
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"Network error talking to CalDAV server: {e}",
                original_error=e,
            )
        _raise_for_status(response, action)
        return response

    async def _propfind(self, url: str, props: tuple[str, ...], depth: str) -> list[davxml.DavResponse]:
        response = await self._request(
            "PROPFIND",
            url,
            action="PROPFIND",
            content=davxml.build_propfind(props),
            headers={"Depth": depth, "Content-Type": "application/xml; charset=utf-8"},
        )
        return self._parse(response)

    @staticmethod
    def _parse(response: httpx.Response) -> list[davxml.DavResponse]:
        try:
            return davxml.parse_multistatus(response.content)
        except etree.XMLSyntaxError as e:
            raise CalendarSyncError("CalDAV server returned malformed XML", original_error=e)

    def _absolute(self, href: str) -> str:
        return urljoin(self.server_url, href)

    async def discover_principal(self) -> str:
        """
        Find the current user's principal URL.

        Tries the configured URL, then the well-known CalDAV location, and
        falls back to the configured URL itself.
        """
        for candidate in (self.server_url, urljoin(self.server_url, WELL_KNOWN_PATH)):
            try:
                responses = await self._propfind(
                    candidate, (davxml.CURRENT_USER_PRINCIPAL,), depth="0"
                )
            except NotFoundError:
                continue
            for response in responses:
                principal = response.href_of(davxml.CURRENT_USER_PRINCIPAL)
                if principal:
                    return self._absolute(principal)
        logger.debug(f"No current-user-principal at {self.server_url}, using it directly")
        return self.server_url

    async def calendar_home(self) -> str:
        """Get the calendar-home-set URL (cached)."""
        if self._home_url is not None:
            return self._home_url

        principal = await self.discover_principal()
        responses = await self._propfind(principal, (davxml.CALENDAR_HOME_SET,), depth="0")
        home = None
        for response in responses:
            home = response.href_of(davxml.CALENDAR_HOME_SET)
            if home:
                break

        self._home_url = self._absolute(home) if home else principal
        logger.debug(f"Calendar home for {self.username}: {self._home_url}")
        return self._home_url

    async def list_calendars(self) -> list[DavCalendar]:
        """
        List calendar collections in the calendar home.

        Returns:
            Calendars in server order; non-calendar collections are skipped
        """
        home = await self.calendar_home()
        responses = await self._propfind(home, davxml.CALENDAR_PROPS, depth="1")

        calendars = []
        for response in responses:
            if not davxml.is_calendar(response):
                continue
            calendars.append(
                DavCalendar(
                    url=self._absolute(response.href),
                    display_name=response.text(davxml.DISPLAYNAME),
                    description=response.text(davxml.CALENDAR_DESCRIPTION),
                    color=response.text(davxml.CALENDAR_COLOR),
                    ctag=response.text(davxml.GETCTAG),
                    components=davxml.supported_components(response),
                )
            )

        logger.debug(f"Listed {len(calendars)} CalDAV calendars for {self.username}")
        return calendars

    async def get_ctag(self, calendar_url: str) -> Optional[str]:
        """
        Get a calendar's collection tag.

        Servers without ``getctag`` expose ``DAV:sync-token``, which changes
        under the same conditions and is used instead.
        """
        responses = await self._propfind(
            calendar_url, (davxml.GETCTAG, davxml.SYNC_TOKEN), depth="0"
        )
        for response in responses:
            ctag = response.text(davxml.GETCTAG) or response.text(davxml.SYNC_TOKEN)
            if ctag:
                return ctag
        return None

    async def query_objects(
        self,
        calendar_url: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[CalendarObject]:
        """
        List event objects, optionally limited to a time range.

        Args:
            calendar_url: Calendar collection URL
            start: Lower bound of the time-range filter
            end: Upper bound of the time-range filter

        Returns:
            Objects with their ETag and iCalendar data
        """
        response = await self._request(
            "REPORT",
            calendar_url,
            action="REPORT",
            content=davxml.build_calendar_query(start, end),
            headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
        )

        objects = []
        for item in self._parse(response):
            data = item.text(davxml.CALENDAR_DATA)
            if item.status >= 400 or not data:
                continue
            objects.append(
                CalendarObject(
                    url=self._absolute(item.href),
                    etag=item.text(davxml.GETETAG),
                    data=data,
                )
            )

        logger.debug(f"Listed {len(objects)} objects from {calendar_url}")
        return objects

    async def get_object(self, url: str) -> CalendarObject:
        """Fetch a single object by URL."""
        response = await self._request("GET", url, action="GET")
        return CalendarObject(url=url, etag=response.headers.get("ETag"), data=response.text)

    async def put_object(
        self,
        url: str,
        data: str,
        etag: Optional[str] = None,
        create: bool = False,
    ) -> Optional[str]:
        """
        Store an object.

        Args:
            url: Object URL
            data: iCalendar text
            etag: Expected current ETag (sent as If-Match)
            create: Refuse to overwrite an existing object (If-None-Match: *)

        Returns:
            New ETag when the server reports one

        Raises:
            ConflictError: If the precondition failed (412)
        """
        headers = {"Content-Type": "text/calendar; charset=utf-8"}
        if create:
            headers["If-None-Match"] = "*"
        elif etag:
            headers["If-Match"] = etag

        response = await self._request(
            "PUT", url, action="PUT", content=data.encode("utf-8"), headers=headers
        )
        logger.info(f"Stored CalDAV object {url}")
        return response.headers.get("ETag")

    async def delete_object(self, url: str, etag: Optional[str] = None) -> None:
        """
        Delete an object.

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If the ETag no longer matches (412)
        """
        headers = {"If-Match": etag} if etag else None
        await self._request("DELETE", url, action="DELETE", headers=headers)
        logger.info(f"Deleted CalDAV object {url}")

    async def close(self) -> None:
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
