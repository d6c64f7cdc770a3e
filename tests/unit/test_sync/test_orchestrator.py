"""Tests for the sync orchestrator."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from calsync.config import Settings
from calsync.contacts import DirectoryContactResolver
from calsync.integrations.base import (
    Account,
    Attendee,
    CalendarInfo,
    Changed,
    FetchResult,
    FullSyncRequired,
    RecurrenceScope,
    Unchanged,
)
from calsync.integrations.exceptions import AuthError, TransientNetworkError, ValidationError
from calsync.sync.orchestrator import ChangeSet, SyncOrchestrator
from calsync.sync.state import InMemorySyncStateStore, SQLAlchemySyncStateStore, SyncCursor
from calsync.sync.store import SQLAlchemyEventStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
GOOGLE = "me@example.com"
FASTMAIL = "me@fastmail.com"
WORK = "https://dav.example.com/calendars/me/work/"


def make_provider(*calendars: CalendarInfo) -> MagicMock:
    provider = MagicMock()
    provider.list_calendars = AsyncMock(return_value=list(calendars))
    provider.fetch_all = AsyncMock(return_value=FetchResult([], None))
    provider.fetch_incremental = AsyncMock()
    provider.create_event = AsyncMock()
    provider.update_event = AsyncMock()
    provider.delete_event = AsyncMock()
    provider.invalidate = AsyncMock()
    return provider


@pytest.fixture
def google_provider():
    return make_provider(CalendarInfo("primary", GOOGLE, "Me", primary=True))


@pytest.fixture
def caldav_provider():
    return make_provider(CalendarInfo(WORK, FASTMAIL, "Work"))


@pytest.fixture
def state() -> InMemorySyncStateStore:
    return InMemorySyncStateStore()


@pytest.fixture
def event_store(session_factory) -> SQLAlchemyEventStore:
    return SQLAlchemyEventStore(session_factory)


@pytest.fixture
def orchestrator(google_provider, caldav_provider, google_account, caldav_account, state, event_store, settings):
    return SyncOrchestrator(
        providers={"google": google_provider, "caldav": caldav_provider},
        accounts=[google_account, caldav_account],
        state=state,
        store=event_store,
        settings=settings,
        clock=lambda: NOW,
    )


class TestFullSync:
    """Tests for calendars without a stored token."""

    @pytest.mark.asyncio
    async def test_first_pass_lists_everything(
        self, orchestrator, google_provider, caldav_provider, state, event_store, event_factory
    ):
        """A first pass lists each calendar in the window and stores tokens."""
        google_event = event_factory()
        dav_event = event_factory(native_id="uid-1", account_id=FASTMAIL, calendar_id=WORK)
        google_provider.fetch_all.return_value = FetchResult([google_event], "sync-1")
        caldav_provider.fetch_all.return_value = FetchResult([dav_event], "ctag-1")

        report = await orchestrator.run_pass()

        assert report.full_syncs == 2
        assert report.changed_count == 2
        assert report.summary() == "2 changed, 0 deleted"
        _, calendar_id, time_min, time_max = google_provider.fetch_all.await_args.args
        assert calendar_id == "primary"
        assert time_min == NOW - timedelta(days=30)
        assert time_max == NOW + timedelta(days=90)
        google_provider.fetch_incremental.assert_not_called()

        assert state.get(GOOGLE, "primary") == SyncCursor("sync-1", NOW)
        assert state.get(FASTMAIL, WORK) == SyncCursor("ctag-1", NOW)
        assert {e.id for e in event_store.get_all()} == {google_event.id, dav_event.id}

    @pytest.mark.asyncio
    async def test_force_full_ignores_tokens(self, orchestrator, google_provider, state):
        state.set(GOOGLE, "primary", SyncCursor("sync-1"))

        report = await orchestrator.sync(force_full=True)

        google_provider.fetch_all.assert_awaited_once()
        google_provider.fetch_incremental.assert_not_called()
        assert report.full_syncs == 2

    @pytest.mark.asyncio
    async def test_full_sync_removes_stale_events(
        self, orchestrator, google_provider, state, event_store, event_factory
    ):
        """Local events absent from a full listing of the window are deleted."""
        kept = event_factory(native_id="kept")
        gone = event_factory(native_id="gone")
        outside = event_factory(
            native_id="old",
            start=NOW - timedelta(days=60),
            end=NOW - timedelta(days=60) + timedelta(hours=1),
        )
        other_calendar = event_factory(native_id="team-1", calendar_id="team")
        event_store.upsert_many([kept, gone, outside, other_calendar])
        google_provider.fetch_all.return_value = FetchResult([kept], "sync-1")

        report = await orchestrator.run_pass()

        assert report.change_set.deleted_ids == [gone.id]
        assert {e.native_id for e in event_store.get_all()} == {"kept", "old", "team-1"}

    @pytest.mark.asyncio
    async def test_free_busy_calendars_skipped(self, orchestrator, google_provider):
        google_provider.list_calendars.return_value = [
            CalendarInfo("primary", GOOGLE, "Me"),
            CalendarInfo("boss@example.com", GOOGLE, "Boss", access_role="freeBusyReader"),
        ]

        report = await orchestrator.sync()

        assert google_provider.fetch_all.await_count == 1
        assert {o.calendar_id for o in report.outcomes} == {"primary", WORK}


class TestIncrementalSync:
    """Tests for calendars with a stored token."""

    @pytest.mark.asyncio
    async def test_unchanged(self, orchestrator, google_provider, state):
        state.set(GOOGLE, "primary", SyncCursor("sync-1", NOW))
        google_provider.fetch_incremental.return_value = Unchanged("sync-1")

        report = await orchestrator.sync()

        account, calendar_id, token, _, _ = google_provider.fetch_incremental.await_args.args
        assert (account.id, calendar_id, token) == (GOOGLE, "primary", "sync-1")
        google_provider.fetch_all.assert_not_called()
        outcome = next(o for o in report.outcomes if o.account_id == GOOGLE)
        assert outcome.mode == "unchanged"
        assert f"{GOOGLE}\tprimary" not in report.change_set.updated_cursors

    @pytest.mark.asyncio
    async def test_unchanged_with_new_token(self, orchestrator, google_provider, state):
        earlier = NOW - timedelta(days=1)
        state.set(GOOGLE, "primary", SyncCursor("sync-1", earlier))
        google_provider.fetch_incremental.return_value = Unchanged("sync-2")

        await orchestrator.run_pass()

        assert state.get(GOOGLE, "primary") == SyncCursor("sync-2", earlier)

    @pytest.mark.asyncio
    async def test_changed_applies_upserts_and_deletes(
        self, orchestrator, google_provider, state, event_store, event_factory
    ):
        removed = event_factory(native_id="removed")
        event_store.upsert(removed)
        earlier = NOW - timedelta(days=1)
        state.set(GOOGLE, "primary", SyncCursor("sync-1", earlier))
        updated = event_factory(native_id="updated", summary="Moved")
        google_provider.fetch_incremental.return_value = Changed([updated], [removed.id], "sync-2")

        report = await orchestrator.run_pass()

        outcome = next(o for o in report.outcomes if o.account_id == GOOGLE)
        assert (outcome.mode, outcome.changed, outcome.deleted) == ("incremental", 1, 1)
        assert state.get(GOOGLE, "primary") == SyncCursor("sync-2", earlier)
        assert [e.native_id for e in event_store.get_all() if e.account_id == GOOGLE] == ["updated"]

    @pytest.mark.asyncio
    async def test_incremental_does_not_reconcile(
        self, orchestrator, google_provider, state, event_store, event_factory
    ):
        """Events not mentioned by an incremental result are left alone."""
        event_store.upsert(event_factory(native_id="untouched"))
        state.set(GOOGLE, "primary", SyncCursor("sync-1"))
        google_provider.fetch_incremental.return_value = Changed([], [], "sync-2")

        await orchestrator.run_pass()

        assert [e.native_id for e in event_store.get_all()] == ["untouched"]

    @pytest.mark.asyncio
    async def test_token_invalidated_escalates_once(
        self, orchestrator, google_provider, state, event_factory
    ):
        """A rejected token triggers exactly one full listing in the same pass."""
        state.set(GOOGLE, "primary", SyncCursor("expired"))
        google_provider.fetch_incremental.return_value = FullSyncRequired("410 Gone")
        google_provider.fetch_all.return_value = FetchResult([event_factory()], "sync-fresh")

        report = await orchestrator.run_pass()

        google_provider.fetch_incremental.assert_awaited_once()
        google_provider.fetch_all.assert_awaited_once()
        outcome = next(o for o in report.outcomes if o.account_id == GOOGLE)
        assert outcome.escalated is True
        assert outcome.mode == "full"
        assert state.get(GOOGLE, "primary") == SyncCursor("sync-fresh", NOW)

    @pytest.mark.asyncio
    async def test_caldav_refetch(
        self, orchestrator, caldav_provider, state, event_store, event_factory
    ):
        """A ctag refetch is authoritative without escalating."""
        stale = event_factory(native_id="uid-gone", account_id=FASTMAIL, calendar_id=WORK)
        current = event_factory(native_id="uid-1", account_id=FASTMAIL, calendar_id=WORK)
        event_store.upsert_many([stale, current])
        state.set(FASTMAIL, WORK, SyncCursor("ctag-1", NOW - timedelta(days=1)))
        caldav_provider.fetch_incremental.return_value = Changed([current], [], "ctag-2", refetched=True)

        report = await orchestrator.run_pass()

        caldav_provider.fetch_all.assert_not_called()
        outcome = next(o for o in report.outcomes if o.account_id == FASTMAIL)
        assert outcome.mode == "refetch"
        assert outcome.escalated is False
        assert state.get(FASTMAIL, WORK) == SyncCursor("ctag-2", NOW)
        assert stale.id in report.change_set.deleted_ids
        assert [e.native_id for e in event_store.get_all() if e.account_id == FASTMAIL] == ["uid-1"]


class TestFailures:
    """Failures are contained to their calendar or account."""

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_token(self, orchestrator, google_provider, caldav_provider, state):
        state.set(GOOGLE, "primary", SyncCursor("sync-1"))
        google_provider.fetch_incremental.side_effect = TransientNetworkError("503 after retries")
        caldav_provider.fetch_all.return_value = FetchResult([], "ctag-1")

        report = await orchestrator.run_pass()

        assert state.get(GOOGLE, "primary").token == "sync-1"
        assert state.get(FASTMAIL, WORK).token == "ctag-1"
        [failure] = report.failures
        assert (failure.account_id, failure.status) == (GOOGLE, "failed")
        assert report.summary() == "0 changed, 0 deleted, 1 failed"

    @pytest.mark.asyncio
    async def test_auth_failure_does_not_abort_other_accounts(
        self, orchestrator, google_provider, caldav_provider, state
    ):
        google_provider.list_calendars.side_effect = AuthError("token revoked")
        caldav_provider.fetch_all.return_value = FetchResult([], "ctag-1")

        report = await orchestrator.run_pass()

        assert report.failed_accounts == {GOOGLE}
        assert state.get(FASTMAIL, WORK).token == "ctag-1"
        google_provider.fetch_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_auth_failure_per_calendar(self, orchestrator, google_provider):
        google_provider.fetch_all.side_effect = AuthError("403 forbidden")

        report = await orchestrator.sync()

        [failure] = report.failures
        assert failure.calendar_id == "primary"
        assert failure.status == "auth_failed"

    @pytest.mark.asyncio
    async def test_timeout(self, google_provider, google_account, state):
        async def hang(*args):
            await asyncio.sleep(10)

        google_provider.fetch_all.side_effect = hang
        orchestrator = SyncOrchestrator(
            providers={"google": google_provider},
            accounts=[google_account],
            state=state,
            settings=Settings(_env_file=None, provider_call_timeout=0.05),
            clock=lambda: NOW,
        )

        report = await orchestrator.sync()

        [failure] = report.failures
        assert failure.error == "timed out"
        assert state.get(GOOGLE, "primary").token is None

    @pytest.mark.asyncio
    async def test_unknown_provider(self, state, settings):
        orchestrator = SyncOrchestrator(
            providers={},
            accounts=[Account("me@example.com", "google")],
            state=state,
            settings=settings,
        )

        report = await orchestrator.sync()

        assert report.outcomes[0].status == "failed"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, orchestrator, google_provider, caldav_provider, state):
        """An error outside the sync taxonomy fails its calendar only."""
        google_provider.fetch_all.side_effect = ValueError("malformed payload")
        caldav_provider.fetch_all.return_value = FetchResult([], "ctag-1")

        report = await orchestrator.run_pass()

        assert state.get(FASTMAIL, WORK).token == "ctag-1"
        assert state.get(GOOGLE, "primary").token is None
        [failure] = report.failures
        assert (failure.account_id, failure.calendar_id, failure.status) == (GOOGLE, "primary", "failed")
        assert "ValueError" in failure.error

    @pytest.mark.asyncio
    async def test_unexpected_error_listing_calendars(self, orchestrator, google_provider, caldav_provider, state):
        google_provider.list_calendars.side_effect = RuntimeError("socket closed")
        caldav_provider.fetch_all.return_value = FetchResult([], "ctag-1")

        report = await orchestrator.run_pass()

        [failure] = report.failures
        assert (failure.account_id, failure.calendar_id, failure.status) == (GOOGLE, None, "failed")
        assert state.get(FASTMAIL, WORK).token == "ctag-1"

    @pytest.mark.asyncio
    async def test_transient_failure_listing_calendars(
        self, orchestrator, google_provider, caldav_provider, state
    ):
        """A network failure while listing one account's calendars leaves the others running."""
        google_provider.list_calendars.side_effect = TransientNetworkError("connection reset")
        caldav_provider.fetch_all.return_value = FetchResult([], "ctag-1")

        report = await orchestrator.run_pass()

        [failure] = report.failures
        assert (failure.account_id, failure.status) == (GOOGLE, "failed")
        assert report.failed_accounts == set()
        google_provider.fetch_all.assert_not_called()
        caldav_provider.fetch_all.assert_awaited_once()
        assert state.get(FASTMAIL, WORK).token == "ctag-1"


class TestEnrichment:
    @pytest.mark.asyncio
    async def test_display_names_filled(
        self, google_provider, google_account, state, settings, event_factory
    ):
        event = event_factory(attendees=[Attendee("me@example.com"), Attendee("stranger@example.com")])
        google_provider.fetch_all.return_value = FetchResult([event], "sync-1")
        orchestrator = SyncOrchestrator(
            providers={"google": google_provider},
            accounts=[google_account],
            state=state,
            contacts=DirectoryContactResolver([google_account]),
            settings=settings,
        )

        report = await orchestrator.sync()

        attendees = report.change_set.changed[0].attendees
        assert [a.display_name for a in attendees] == ["Me Example", None]


class TestApply:
    @pytest.mark.asyncio
    async def test_apply_change_set(self, orchestrator, state, event_store, event_factory):
        event = event_factory()
        change_set = ChangeSet(
            changed=[event],
            updated_cursors={f"{GOOGLE}\tprimary": SyncCursor("sync-9")},
        )

        await orchestrator.apply(change_set)

        assert event_store.get_by_id(event.id) == event
        assert state.get(GOOGLE, "primary").token == "sync-9"
        assert change_set.updated_tokens == {f"{GOOGLE}\tprimary": "sync-9"}

    def test_empty_change_set(self):
        assert ChangeSet().is_empty

    @pytest.mark.asyncio
    async def test_database_backed_cursors(
        self, google_provider, google_account, session_factory, event_store, settings
    ):
        """Cursors round-trip through the database between passes."""
        state = SQLAlchemySyncStateStore(session_factory)
        google_provider.fetch_all.return_value = FetchResult([], "sync-1")
        google_provider.fetch_incremental.return_value = Unchanged("sync-1")
        orchestrator = SyncOrchestrator(
            providers={"google": google_provider},
            accounts=[google_account],
            state=state,
            store=event_store,
            settings=settings,
            clock=lambda: NOW,
        )

        await orchestrator.run_pass()
        report = await orchestrator.run_pass()

        assert report.outcomes[0].mode == "unchanged"
        google_provider.fetch_all.assert_awaited_once()
        assert state.get(GOOGLE, "primary").token == "sync-1"


class TestAccounts:
    @pytest.mark.asyncio
    async def test_remove_account(
        self, orchestrator, google_provider, caldav_provider, state, event_store, event_factory
    ):
        event_store.upsert(event_factory())
        event_store.upsert(event_factory(native_id="uid-1", account_id=FASTMAIL, calendar_id=WORK))
        state.set(GOOGLE, "primary", SyncCursor("sync-1"))

        await orchestrator.remove_account(GOOGLE)

        assert [a.id for a in orchestrator.accounts] == [FASTMAIL]
        assert [e.account_id for e in event_store.get_all()] == [FASTMAIL]
        assert state.get(GOOGLE, "primary").token is None
        google_provider.invalidate.assert_awaited_once_with(GOOGLE)
        caldav_provider.invalidate.assert_not_called()

    def test_add_account(self, orchestrator):
        orchestrator.add_account(Account("new@example.com", "google"))
        assert "new@example.com" in [a.id for a in orchestrator.accounts]


class TestMutations:
    """Create, update and delete are routed to the owning provider."""

    @pytest.mark.asyncio
    async def test_create_event(self, orchestrator, google_provider, event_store, event_factory):
        draft = event_factory(native_id="draft", account_id=None, calendar_id=None)
        created = event_factory(native_id="new-1")
        google_provider.create_event.return_value = created

        result = await orchestrator.create_event(GOOGLE, "primary", draft, add_conference=True)

        assert result == created
        account, calendar_id, event, add_conference = google_provider.create_event.await_args.args
        assert (account.id, calendar_id, event, add_conference) == (GOOGLE, "primary", draft, True)
        assert event_store.get_by_id(created.id) == created

    @pytest.mark.asyncio
    async def test_create_event_unknown_account(self, orchestrator, event_factory):
        with pytest.raises(ValidationError):
            await orchestrator.create_event("nobody@example.com", "primary", event_factory())

    @pytest.mark.asyncio
    async def test_update_event(self, orchestrator, caldav_provider, event_store, event_factory):
        original = event_factory(native_id="uid-1", account_id=FASTMAIL, calendar_id=WORK)
        updated = event_factory(native_id="uid-1", account_id=FASTMAIL, calendar_id=WORK, summary="New")
        caldav_provider.update_event.return_value = updated

        result = await orchestrator.update_event(original, {"summary": "New"}, scope=RecurrenceScope.ALL_IN_SERIES)

        assert result == updated
        caldav_provider.update_event.assert_awaited_once()
        kwargs = caldav_provider.update_event.await_args.kwargs
        assert kwargs["scope"] == RecurrenceScope.ALL_IN_SERIES
        assert kwargs["original"] == original
        assert event_store.get_by_id(original.id).summary == "New"

    @pytest.mark.asyncio
    async def test_update_local_only_event(self, orchestrator, event_factory):
        with pytest.raises(ValidationError):
            await orchestrator.update_event(event_factory(account_id=None), {"summary": "x"})

    @pytest.mark.asyncio
    async def test_delete_event(self, orchestrator, google_provider, event_store, event_factory):
        event = event_factory(recurring_event_id="series-1")
        event_store.upsert(event)

        await orchestrator.delete_event(event)

        google_provider.delete_event.assert_awaited_once()
        assert google_provider.delete_event.await_args.kwargs["recurring_event_id"] == "series-1"
        assert event_store.is_empty()

    @pytest.mark.asyncio
    async def test_delete_local_only_event(self, orchestrator, event_factory):
        with pytest.raises(ValidationError):
            await orchestrator.delete_event(event_factory(account_id=None))
