"""
Sync orchestrator.

Walks every account and calendar, decides between incremental and full
sync from the stored cursor, and folds the results into one change-set.

Per calendar:
- no stored token (or forced)      -> full listing
- token, provider says Unchanged   -> nothing to do
- token, provider says Changed     -> apply changes (CalDAV refetches land here)
- token, FullSyncRequired (REST)   -> one full listing in the same pass

A failing calendar never aborts the pass; its stored cursor is left as is
so the next pass retries from the same point.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from functools import partial
from datetime import datetime, timezone
from typing import Callable, Literal, Mapping, Optional, Sequence

from calsync.config import Settings, get_settings
from calsync.contacts import ContactResolver, enrich_display_names
from calsync.identity import calendar_key, parse_calendar_key
from calsync.integrations.base import (
    Account,
    CalendarEvent,
    CalendarProvider,
    Changed,
    FullSyncRequired,
    RecurrenceScope,
    Unchanged,
)
from calsync.integrations.exceptions import AuthError, CalendarSyncError, ValidationError
from calsync.sync.state import SyncCursor, SyncStateStore
from calsync.sync.store import LocalEventStore

logger = logging.getLogger(__name__)

SyncMode = Literal["full", "incremental", "unchanged", "refetch", "none"]
OutcomeStatus = Literal["ok", "failed", "auth_failed"]


@dataclass
class ChangeSet:
    """Aggregated result of one pass across all calendars."""

    changed: list[CalendarEvent] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    updated_cursors: dict[str, SyncCursor] = field(default_factory=dict)

    @property
    def updated_tokens(self) -> dict[str, Optional[str]]:
        """Calendar key to new continuation token."""
        return {key: cursor.token for key, cursor in self.updated_cursors.items()}

    @property
    def is_empty(self) -> bool:
        return not self.changed and not self.deleted_ids and not self.updated_cursors


@dataclass
class CalendarSyncOutcome:
    """What happened to one calendar (or one account when calendar_id is None)."""

    account_id: str
    calendar_id: Optional[str]
    status: OutcomeStatus = "ok"
    mode: SyncMode = "none"
    changed: int = 0
    deleted: int = 0
    escalated: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass
class SyncReport:
    """Change-set plus per-calendar outcomes for one pass."""

    change_set: ChangeSet
    outcomes: list[CalendarSyncOutcome]
    started_at: datetime
    finished_at: datetime

    @property
    def changed_count(self) -> int:
        return len(self.change_set.changed)

    @property
    def deleted_count(self) -> int:
        return len(self.change_set.deleted_ids)

    @property
    def failures(self) -> list[CalendarSyncOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    @property
    def failed_accounts(self) -> set[str]:
        return {o.account_id for o in self.outcomes if o.status == "auth_failed"}

    @property
    def full_syncs(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.mode == "full")

    def summary(self) -> str:
        text = f"{self.changed_count} changed, {self.deleted_count} deleted"
        if self.failures:
            text += f", {len(self.failures)} failed"
        return text


@dataclass
class _CalendarResult:
    outcome: CalendarSyncOutcome
    changed: list[CalendarEvent] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    cursor: Optional[SyncCursor] = None
    # Full listings (and CalDAV refetches) replace the calendar's window
    authoritative: bool = False


class SyncOrchestrator:
    """
    Runs sync passes over a set of accounts.

    Providers, stores and the contact resolver are injected; the
    orchestrator owns no network or storage code itself.

    Usage:
        orchestrator = SyncOrchestrator(
            providers={"google": google, "caldav": caldav},
            accounts=[Account("me@example.com", "google")],
            state=SQLAlchemySyncStateStore(factory),
            store=SQLAlchemyEventStore(factory),
        )
        report = await orchestrator.run_pass()
    """

    def __init__(
        self,
        providers: Mapping[str, CalendarProvider],
        accounts: Sequence[Account],
        state: SyncStateStore,
        store: Optional[LocalEventStore] = None,
        contacts: Optional[ContactResolver] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._providers = dict(providers)
        self._accounts: dict[str, Account] = {account.id: account for account in accounts}
        self._state = state
        self._store = store
        self._contacts = contacts
        self._settings = settings or get_settings()
        self._clock = clock
        self._calendar_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pass_lock = asyncio.Lock()

    @property
    def accounts(self) -> list[Account]:
        return list(self._accounts.values())

    def add_account(self, account: Account) -> None:
        self._accounts[account.id] = account

    def provider_for(self, account: Account) -> CalendarProvider:
        provider = self._providers.get(account.provider)
        if provider is None:
            raise ValidationError(f"No provider registered for {account.provider} accounts")
        return provider

    def _account(self, account_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise ValidationError(f"Unknown account {account_id}")
        return account

    async def _call(self, awaitable):
        """Await a provider call, cancelling it after the configured timeout."""
        return await asyncio.wait_for(awaitable, timeout=self._settings.provider_call_timeout)

    async def _run_in_executor(self, func, *args, **kwargs):
        """Run a blocking store call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    # ------------------------------------------------------------------
    # Sync passes
    # ------------------------------------------------------------------

    async def sync(self, force_full: bool = False) -> SyncReport:
        """
        Run one pass across every account and calendar.

        Nothing is written; see ``apply`` and ``run_pass``.

        Args:
            force_full: Ignore stored cursors and list every calendar fully

        Returns:
            SyncReport with the aggregated change-set
        """
        started_at = self._clock()
        time_min, time_max = self._settings.sync_window(started_at)
        semaphore = asyncio.Semaphore(self._settings.sync_concurrency)

        account_results = await asyncio.gather(*(
            self._sync_account(account, force_full, time_min, time_max, semaphore)
            for account in self.accounts
        ))

        results = [result for group in account_results for result in group]
        change_set = ChangeSet()
        for result in results:
            change_set.changed.extend(result.changed)
            change_set.deleted_ids.extend(result.deleted_ids)
            if result.cursor is not None:
                key = calendar_key(result.outcome.account_id, result.outcome.calendar_id)
                change_set.updated_cursors[key] = result.cursor

        stale = await self._stale_ids(results, time_min, time_max)
        if stale:
            logger.debug(f"{len(stale)} local events no longer exist remotely")
            change_set.deleted_ids.extend(stale)

        if self._contacts is not None and change_set.changed:
            try:
                enrich_display_names(change_set.changed, self._contacts)
            except Exception as e:
                logger.warning(f"Display name enrichment failed: {e}")

        report = SyncReport(
            change_set=change_set,
            outcomes=[result.outcome for result in results],
            started_at=started_at,
            finished_at=self._clock(),
        )
        logger.info(f"Sync pass finished: {report.summary()}")
        return report

    async def _sync_account(
        self,
        account: Account,
        force_full: bool,
        time_min: datetime,
        time_max: datetime,
        semaphore: asyncio.Semaphore,
    ) -> list[_CalendarResult]:
        try:
            provider = self.provider_for(account)
            async with semaphore:
                calendars = await self._call(provider.list_calendars(account))
        except AuthError as e:
            logger.error(f"Authentication failed for {account.id}: {e}")
            return [_CalendarResult(CalendarSyncOutcome(account.id, None, "auth_failed", error=str(e)))]
        except (CalendarSyncError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to list calendars for {account.id}: {e!r}")
            return [_CalendarResult(CalendarSyncOutcome(account.id, None, "failed", error=repr(e)))]
        except Exception as e:
            logger.exception(f"Unexpected error listing calendars for {account.id}")
            return [_CalendarResult(CalendarSyncOutcome(account.id, None, "failed", error=repr(e)))]

        syncable = [calendar for calendar in calendars if calendar.access_role != "freeBusyReader"]
        logger.debug(f"{account.id}: syncing {len(syncable)} of {len(calendars)} calendars")

        return list(await asyncio.gather(*(
            self._sync_calendar(account, provider, calendar.id, force_full, time_min, time_max, semaphore)
            for calendar in syncable
        )))

    async def _sync_calendar(
        self,
        account: Account,
        provider: CalendarProvider,
        calendar_id: str,
        force_full: bool,
        time_min: datetime,
        time_max: datetime,
        semaphore: asyncio.Semaphore,
    ) -> _CalendarResult:
        outcome = CalendarSyncOutcome(account.id, calendar_id)
        key = calendar_key(account.id, calendar_id)

        # One sync per calendar at a time, incremental or full
        async with semaphore, self._calendar_locks[key]:
            try:
                cursor = await self._run_in_executor(self._state.get, account.id, calendar_id)
                if force_full or not cursor.token:
                    return await self._full_sync(account, provider, calendar_id, time_min, time_max, outcome)
                return await self._incremental_sync(
                    account, provider, calendar_id, cursor, time_min, time_max, outcome
                )
            except AuthError as e:
                logger.error(f"Authentication failed for {account.id} ({calendar_id}): {e}")
                outcome.status, outcome.error = "auth_failed", str(e)
            except asyncio.TimeoutError:
                logger.error(f"Sync of {calendar_id} ({account.id}) timed out")
                outcome.status, outcome.error = "failed", "timed out"
            except CalendarSyncError as e:
                logger.error(f"Sync of {calendar_id} ({account.id}) failed: {e}")
                outcome.status, outcome.error = "failed", str(e)
            except Exception as e:
                logger.exception(f"Unexpected error syncing {calendar_id} ({account.id})")
                outcome.status, outcome.error = "failed", repr(e)
        return _CalendarResult(outcome)

    async def _full_sync(
        self,
        account: Account,
        provider: CalendarProvider,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        outcome: CalendarSyncOutcome,
    ) -> _CalendarResult:
        result = await self._call(provider.fetch_all(account, calendar_id, time_min, time_max))
        outcome.mode = "full"
        outcome.changed = len(result.events)
        logger.debug(f"Full sync of {calendar_id} ({account.id}): {len(result.events)} events")
        return _CalendarResult(
            outcome,
            changed=list(result.events),
            cursor=SyncCursor(token=result.continuation_token, last_full_sync_at=self._clock()),
            authoritative=True,
        )

    async def _incremental_sync(
        self,
        account: Account,
        provider: CalendarProvider,
        calendar_id: str,
        cursor: SyncCursor,
        time_min: datetime,
        time_max: datetime,
        outcome: CalendarSyncOutcome,
    ) -> _CalendarResult:
        result = await self._call(
            provider.fetch_incremental(account, calendar_id, cursor.token, time_min, time_max)
        )

        if isinstance(result, FullSyncRequired):
            logger.warning(f"{calendar_id} ({account.id}) needs a full sync: {result.reason}")
            outcome.escalated = True
            return await self._full_sync(account, provider, calendar_id, time_min, time_max, outcome)

        if isinstance(result, Unchanged):
            outcome.mode = "unchanged"
            new_cursor = None
            if result.next_token and result.next_token != cursor.token:
                new_cursor = SyncCursor(token=result.next_token, last_full_sync_at=cursor.last_full_sync_at)
            return _CalendarResult(outcome, cursor=new_cursor)

        if isinstance(result, Changed):
            outcome.mode = "refetch" if result.refetched else "incremental"
            outcome.changed = len(result.changed)
            outcome.deleted = len(result.deleted_ids)
            last_full = self._clock() if result.refetched else cursor.last_full_sync_at
            return _CalendarResult(
                outcome,
                changed=list(result.changed),
                deleted_ids=list(result.deleted_ids),
                cursor=SyncCursor(token=result.next_token or cursor.token, last_full_sync_at=last_full),
                authoritative=result.refetched,
            )

        raise TypeError(f"Unexpected incremental result: {result!r}")

    async def _stale_ids(
        self,
        results: list[_CalendarResult],
        time_min: datetime,
        time_max: datetime,
    ) -> list[str]:
        """
        Local events missing from a full listing of their calendar's window.

        Full listings report what exists, not what was deleted, so deletions
        are found by comparing with the local store.
        """
        authoritative = {
            (r.outcome.account_id, r.outcome.calendar_id): {event.id for event in r.changed}
            for r in results
            if r.authoritative
        }
        if not authoritative or self._store is None:
            return []

        local_events = await self._run_in_executor(self._store.get_all)

        stale = []
        for event in local_events:
            fresh_ids = authoritative.get((event.account_id, event.calendar_id))
            if fresh_ids is None or event.id in fresh_ids:
                continue
            if event.end.as_utc() <= time_min or event.start.as_utc() >= time_max:
                continue
            stale.append(event.id)
        return stale

    def _apply(self, change_set: ChangeSet) -> None:
        if self._store is not None:
            for event in change_set.changed:
                self._store.upsert(event)
            for event_id in change_set.deleted_ids:
                self._store.delete(event_id)

        # Cursors last: a crash before this point only repeats work
        for key, cursor in change_set.updated_cursors.items():
            parsed = parse_calendar_key(key)
            if parsed is None:
                logger.warning(f"Skipping malformed calendar key {key!r}")
                continue
            self._state.set(parsed[0], parsed[1], cursor)

    async def apply(self, change_set: ChangeSet) -> None:
        """Write a change-set to the local store and the cursor store."""
        await self._run_in_executor(self._apply, change_set)
        logger.debug(
            f"Applied {len(change_set.changed)} upserts, {len(change_set.deleted_ids)} deletes, "
            f"{len(change_set.updated_cursors)} cursors"
        )

    async def run_pass(self, force_full: bool = False) -> SyncReport:
        """Sync and apply; passes never overlap."""
        async with self._pass_lock:
            report = await self.sync(force_full=force_full)
            await self.apply(report.change_set)
            return report

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def remove_account(self, account_id: str) -> None:
        """
        Disconnect an account.

        Deletes its local events, clears its cursors and closes cached
        provider connections.
        """
        account = self._accounts.pop(account_id, None)
        if self._store is not None:
            await self._run_in_executor(self._store.delete_by_account, account_id)
        await self._run_in_executor(self._state.clear_account, account_id)

        providers = [self._providers.get(account.provider)] if account else self._providers.values()
        for provider in providers:
            invalidate = getattr(provider, "invalidate", None)
            if invalidate is not None:
                await invalidate(account_id)
        logger.info(f"Removed account {account_id}")

    # ------------------------------------------------------------------
    # Mutations routed to the owning provider
    # ------------------------------------------------------------------

    async def create_event(
        self,
        account_id: str,
        calendar_id: str,
        event: CalendarEvent,
        add_conference: bool = False,
    ) -> CalendarEvent:
        account = self._account(account_id)
        created = await self._call(
            self.provider_for(account).create_event(account, calendar_id, event, add_conference)
        )
        if self._store is not None:
            await self._run_in_executor(self._store.upsert, created)
        return created

    async def update_event(
        self,
        event: CalendarEvent,
        updates: dict,
        scope: RecurrenceScope = RecurrenceScope.THIS_INSTANCE,
        add_conference: bool = False,
    ) -> CalendarEvent:
        if not event.account_id:
            raise ValidationError("Local-only events cannot be updated remotely")
        account = self._account(event.account_id)
        updated = await self._call(
            self.provider_for(account).update_event(
                account, event.id, updates, scope=scope, original=event, add_conference=add_conference
            )
        )
        if self._store is not None:
            await self._run_in_executor(self._store.upsert, updated)
        return updated

    async def delete_event(
        self,
        event: CalendarEvent,
        scope: RecurrenceScope = RecurrenceScope.THIS_INSTANCE,
    ) -> None:
        if not event.account_id:
            raise ValidationError("Local-only events cannot be deleted remotely")
        account = self._account(event.account_id)
        await self._call(
            self.provider_for(account).delete_event(
                account, event.id, scope=scope, recurring_event_id=event.recurring_event_id
            )
        )
        if self._store is not None:
            await self._run_in_executor(self._store.delete, event.id)
