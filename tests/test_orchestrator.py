"""Integration tests for validation runs against the mock identity server.

These tests exercise the full pipeline (token -> Directory paging -> batch
and fallback lookups -> compare -> events and CSV) with a fake backoff sleep:

- Clean population (every record matches)
- Drifted records (orphaned, email, status, name, missing raw id)
- Failed lookups (profile_lookup_error, counted as errors)
- Event ordering, checkpoints, and counter invariants
- Resume from a checkpoint cursor (including a cancelled run's own), and an expired cursor
- Spot checks with exclusions
- Cancellation, search failures, token refresh
- Bounded fallback concurrency
- Artifact lifetime across long and aborted runs
"""

import asyncio
import random
import threading

import pytest
from recon_check.artifacts import JobArtifactStore
from recon_check.compare import (
    EMAIL_MISMATCH, MISSING_EXTERNAL_ID, NAME_MISMATCH, ORPHANED_RECORD, PROFILE_LOOKUP_ERROR,
    STATUS_MISMATCH,
)
from recon_check.config import RunConfig, SpotCheckConfig
from recon_check.models import Checkpoint, RunProgress, ValidationEvent
from recon_check.orchestrator import PagePrefetcher, ReconValidator, RunState
from recon_check.profile_store import ProfileStoreSettings
from tests.mock_identity_server import MockIdentityServer, population


async def no_sleep(_seconds):
    pass


def make_config(server, **overrides) -> RunConfig:
    fields = dict(
        tenant_url=server.base_url,
        client_id="client",
        client_secret="secret",
        token_endpoint=server.token_endpoint,
        page_size=10,
    )
    fields.update(overrides)
    return RunConfig(**fields)


def run_validation(server, store=None, cancel=None, on_event=None, rng=None, **overrides):
    """Run one validation; returns ``(validator, events)``."""
    validator = ReconValidator(
        make_config(server, **overrides),
        ProfileStoreSettings.from_env(server.profile_env()),
        store if store is not None else JobArtifactStore(),
        rng=rng,
        sleep=no_sleep,
    )
    events = []

    def collect(event):
        events.append(event)
        if on_event is not None:
            on_event(event)

    validator.run(cancel=cancel, on_event=collect)
    return validator, events


def of_type(events, kind):
    return [e for e in events if e.type == kind]


def assert_partition(events):
    for event in of_type(events, ValidationEvent.PROGRESS):
        d = event.data
        assert d["totalProcessed"] == d["matches"] + d["mismatches"] + d["errors"]


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class TestCleanRun:

    def test_all_records_match(self):
        users, profiles = population(25)
        with MockIdentityServer(users=users, profiles=profiles) as server:
            store = JobArtifactStore()
            validator, events = run_validation(server, store=store)

        final = events[-1]
        assert final.type == ValidationEvent.COMPLETE
        summary = final.data["summary"]
        assert summary["totalProcessed"] == 25
        assert summary["matches"] == 25
        assert summary["mismatches"] == 0
        assert summary["errors"] == 0
        assert summary["isRunning"] is False
        assert "sampledUserIds" not in final.data
        assert of_type(events, ValidationEvent.MISMATCH) == []
        assert validator.state == RunState.DONE

        artifact = store.get(final.data["jobId"])
        assert artifact.complete
        assert artifact.row_count == 0

    def test_first_event_is_authenticated_message(self):
        users, profiles = population(1)
        with MockIdentityServer(users=users, profiles=profiles) as server:
            _, events = run_validation(server)
        assert events[0].type == ValidationEvent.PROGRESS
        assert events[0].data["message"] == "Authenticated. Starting validation..."

    def test_empty_directory_completes(self):
        with MockIdentityServer() as server:
            _, events = run_validation(server)
        assert events[-1].type == ValidationEvent.COMPLETE
        assert events[-1].data["summary"]["totalProcessed"] == 0


class TestDriftedRecords:

    @pytest.fixture
    def drifted(self):
        users, profiles = population(6)
        # 0: orphaned (no profile)
        del profiles[users[0]["frIndexedString16"]]
        # 1: email drift
        users[1]["userName"] = users[1]["mail"] = "old@example.com"
        # 2: status drift
        users[2]["accountStatus"] = "inactive"
        # 3: name drift
        users[3]["sn"] = "Byron"
        # 4: raw id never provisioned
        del users[4]["frIndexedString16"]
        # 5: consistent
        with MockIdentityServer(users=users, profiles=profiles) as server:
            yield server, users

    def test_mismatch_kinds_and_counts(self, drifted):
        server, users = drifted
        store = JobArtifactStore()
        _, events = run_validation(server, store=store)

        mismatches = [e.data for e in of_type(events, ValidationEvent.MISMATCH)]
        assert [(m["directoryRecordId"], m["mismatchType"]) for m in mismatches] == [
            (users[0]["_id"], ORPHANED_RECORD),
            (users[1]["_id"], EMAIL_MISMATCH),
            (users[2]["_id"], STATUS_MISMATCH),
            (users[3]["_id"], NAME_MISMATCH),
            (users[4]["_id"], MISSING_EXTERNAL_ID),
        ]
        assert [m["id"] for m in mismatches] == ["m-1", "m-2", "m-3", "m-4", "m-5"]

        summary = events[-1].data["summary"]
        assert summary == {**summary, "totalProcessed": 6, "matches": 1,
                           "mismatches": 5, "errors": 0}
        assert_partition(events)

        artifact = store.get(events[-1].data["jobId"])
        assert artifact.row_count == 5
        assert "orphaned_directory_record" in artifact.content

    def test_orphan_resolved_by_individual_lookup(self, drifted):
        server, users = drifted
        run_validation(server)
        assert server.lookup_requests == [users[0]["frIndexedString16"]]


class TestLookupFailures:

    def test_failed_lookup_counts_as_error(self):
        users, profiles = population(4)
        failing = users[2]["frIndexedString16"]
        with MockIdentityServer(users=users, profiles=profiles,
                                flags={"lookup_fail_uids": {failing}}) as server:
            _, events = run_validation(server)
            # One call plus two fallback retries
            assert server.lookup_requests.count(failing) == 3

        mismatches = of_type(events, ValidationEvent.MISMATCH)
        assert [m.data["mismatchType"] for m in mismatches] == [PROFILE_LOOKUP_ERROR]
        assert mismatches[0].data["directoryRecordId"] == users[2]["_id"]
        summary = events[-1].data["summary"]
        assert (summary["matches"], summary["mismatches"], summary["errors"]) == (3, 0, 1)

    def test_batch_outage_falls_back_to_individual_lookups(self):
        users, profiles = population(8)
        with MockIdentityServer(users=users, profiles=profiles,
                                flags={"batch_fail": True}) as server:
            _, events = run_validation(server)
            assert len(server.lookup_requests) == 8
        assert events[-1].data["summary"]["matches"] == 8

    def test_fallback_respects_concurrency(self):
        users, profiles = population(30)
        hidden = {u["frIndexedString16"] for u in users}
        with MockIdentityServer(users=users, profiles=profiles,
                                flags={"hide_from_batch": hidden, "lookup_delay": 0.05}) as server:
            _, events = run_validation(server, concurrency=5, page_size=30)
            assert len(server.lookup_requests) == 30
            assert server.peak_in_flight <= 5
        assert events[-1].data["summary"]["matches"] == 30


# ---------------------------------------------------------------------------
# Stream shape
# ---------------------------------------------------------------------------

class TestEventStream:

    def test_per_page_order(self):
        users, profiles = population(25)
        users[3]["accountStatus"] = "inactive"
        users[14]["accountStatus"] = "inactive"
        with MockIdentityServer(users=users, profiles=profiles) as server:
            _, events = run_validation(server)

        # progress(message), then per page: mismatch*, progress, checkpoint?
        assert [e.type for e in events] == [
            "progress",
            "mismatch", "progress", "checkpoint",
            "mismatch", "progress", "checkpoint",
            "progress",
            "complete",
        ]
        assert_partition(events)

    def test_checkpoints_carry_next_cursor_and_progress(self):
        users, profiles = population(25)
        with MockIdentityServer(users=users, profiles=profiles) as server:
            _, events = run_validation(server)
        checkpoints = of_type(events, ValidationEvent.CHECKPOINT)
        assert [c.data["pagedResultsCookie"] for c in checkpoints] == ["10", "20"]
        assert [c.data["progress"]["totalProcessed"] for c in checkpoints] == [10, 20]
        assert checkpoints[-1].data["lastProcessedDate"].startswith("2024-03-")

    def test_max_users_stops_early(self):
        users, profiles = population(40)
        with MockIdentityServer(users=users, profiles=profiles) as server:
            _, events = run_validation(server, max_users=15)
        assert events[-1].data["summary"]["totalProcessed"] == 15


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------

class TestResume:

    def test_resume_continues_counters(self):
        users, profiles = population(25)
        resumed = RunProgress(total_processed=10, matches=9, mismatches=1)
        with MockIdentityServer(users=users, profiles=profiles) as server:
            _, events = run_validation(server, resume_from_cookie="10",
                                       resume_progress=resumed)
            assert server.directory_requests[0]["params"]["_pagedResultsCookie"] == "10"

        assert events[0].data["message"].startswith("Resuming validation from checkpoint")
        summary = events[-1].data["summary"]
        assert summary["totalProcessed"] == 25
        assert summary["matches"] == 24
        assert summary["mismatches"] == 1

    def test_resume_mismatch_ids_continue(self):
        users, profiles = population(25)
        users[12]["sn"] = "Byron"
        resumed = RunProgress(total_processed=10, matches=7, mismatches=2, errors=1)
        with MockIdentityServer(users=users, profiles=profiles) as server:
            _, events = run_validation(server, resume_from_cookie="10",
                                       resume_progress=resumed)
        assert [m.data["id"] for m in of_type(events, ValidationEvent.MISMATCH)] == ["m-4"]

    def test_expired_resume_cursor(self):
        users, profiles = population(25)
        with MockIdentityServer(users=users, profiles=profiles,
                                flags={"reject_cookies": {"10"}}) as server:
            validator, events = run_validation(
                server, resume_from_cookie="10",
                resume_progress=RunProgress(total_processed=10, matches=10),
                resume_last_processed_date="2024-03-09T10:00:00.000Z")

        final = events[-1]
        assert final.type == ValidationEvent.ERROR
        assert "resume cursor" in final.data["message"]
        assert "2024-03-09T10:00:00.000Z" in final.data["details"]
        assert validator.state == RunState.FAILED

    def test_cancelled_run_resumes_from_its_checkpoint(self):
        users, profiles = population(25)
        users[3]["accountStatus"] = "inactive"
        cancel = threading.Event()
        saved = []

        def save_first_checkpoint(event):
            if event.type == ValidationEvent.CHECKPOINT and not saved:
                saved.append(Checkpoint.from_dict(event.data))
                cancel.set()

        with MockIdentityServer(users=users, profiles=profiles) as server:
            _, first = run_validation(server, cancel=cancel, on_event=save_first_checkpoint)
            assert first[-1].type == ValidationEvent.ERROR
            checkpoint = saved[0]
            assert checkpoint.cursor == "10"

            already_sent = len(server.directory_requests)
            _, second = run_validation(
                server,
                resume_from_cookie=checkpoint.cursor,
                resume_progress=checkpoint.progress,
                resume_last_processed_date=checkpoint.last_processed_date,
            )
            resumed_cookies = [r["params"].get("_pagedResultsCookie")
                               for r in server.directory_requests[already_sent:]]

        assert resumed_cookies[0] == "10"
        final = second[-1]
        assert final.type == ValidationEvent.COMPLETE
        summary = final.data["summary"]
        # Page one is counted once, from the checkpoint
        assert summary["totalProcessed"] == 25
        assert (summary["matches"], summary["mismatches"], summary["errors"]) == (24, 1, 0)
        assert of_type(second, ValidationEvent.MISMATCH) == []
        assert_partition(second)


# ---------------------------------------------------------------------------
# Spot check
# ---------------------------------------------------------------------------

class TestSpotCheck:

    def test_samples_requested_size(self):
        users, profiles = population(40)
        with MockIdentityServer(users=users, profiles=profiles) as server:
            validator, events = run_validation(
                server, spot_check=SpotCheckConfig(5), rng=random.Random(7))

        final = events[-1]
        assert final.type == ValidationEvent.COMPLETE
        sampled = final.data["sampledUserIds"]
        assert len(sampled) == 5
        assert len(set(sampled)) == 5
        assert final.data["summary"]["totalProcessed"] == 5
        all_ids = [u["_id"] for u in users]
        # Directory order is preserved
        assert sampled == sorted(sampled, key=all_ids.index)

    def test_excluded_ids_are_never_sampled(self):
        users, profiles = population(40)
        excluded = [u["_id"].upper() for u in users[:15]]
        with MockIdentityServer(users=users, profiles=profiles) as server:
            _, events = run_validation(
                server, spot_check=SpotCheckConfig(5, exclude_ids=excluded),
                rng=random.Random(1))
        sampled = events[-1].data["sampledUserIds"]
        assert set(sampled) <= {u["_id"] for u in users[15:]}
        assert len(sampled) == 5

    def test_sample_larger_than_population(self):
        users, profiles = population(6)
        with MockIdentityServer(users=users, profiles=profiles) as server:
            _, events = run_validation(server, spot_check=SpotCheckConfig(50),
                                       rng=random.Random(3), page_size=3)
        final = events[-1]
        assert final.type == ValidationEvent.COMPLETE
        assert 0 < len(final.data["sampledUserIds"]) <= 6

    def test_max_users_caps_the_sample(self):
        users, profiles = population(30)
        with MockIdentityServer(users=users, profiles=profiles) as server:
            validator, events = run_validation(
                server, spot_check=SpotCheckConfig(10), max_users=2, rng=random.Random(5))
        final = events[-1]
        assert final.type == ValidationEvent.COMPLETE
        assert final.data["summary"]["totalProcessed"] == 2
        assert len(final.data["sampledUserIds"]) == 2
        assert validator.sampled_ids == final.data["sampledUserIds"]


# ---------------------------------------------------------------------------
# Failures and cancellation
# ---------------------------------------------------------------------------

class TestFailures:

    def test_authentication_failure(self):
        with MockIdentityServer(flags={"token_fail_count": 1}) as server:
            validator, events = run_validation(server)
        assert len(events) == 1
        assert events[0].type == ValidationEvent.ERROR
        assert events[0].data["message"] == "Failed to authenticate to the directory"
        assert validator.state == RunState.FAILED

    def test_transient_search_failure_is_retried(self):
        users, profiles = population(5)
        with MockIdentityServer(users=users, profiles=profiles,
                                flags={"search_fail_count": 2}) as server:
            _, events = run_validation(server)
            assert len(server.directory_requests) == 3
        assert events[-1].type == ValidationEvent.COMPLETE

    def test_persistent_search_failure_ends_run(self):
        users, profiles = population(5)
        with MockIdentityServer(users=users, profiles=profiles,
                                flags={"search_fail_count": 100}) as server:
            _, events = run_validation(server)
            # One call plus three retries
            assert len(server.directory_requests) == 4
        assert events[-1].type == ValidationEvent.ERROR
        assert "500" in events[-1].data["message"]

    def test_token_refreshed_before_each_fetch_when_near_expiry(self):
        users, profiles = population(25)
        with MockIdentityServer(users=users, profiles=profiles,
                                flags={"expires_in": 30}) as server:
            _, events = run_validation(server)
            # Initial token plus one refresh per page fetch
            assert len(server.issued_tokens) == 4
            auth = [r["authorization"] for r in server.directory_requests]
            assert auth == ["Bearer token-2", "Bearer token-3", "Bearer token-4"]
        assert events[-1].type == ValidationEvent.COMPLETE

    def test_token_refresh_failure_ends_run(self):
        users, profiles = population(25)
        with MockIdentityServer(users=users, profiles=profiles,
                                flags={"expires_in": 30, "token_fail_after": 1}) as server:
            _, events = run_validation(server)
            # Initial request plus three refresh attempts
            assert len(server.token_requests) == 4
        final = events[-1]
        assert final.type == ValidationEvent.ERROR
        assert final.data["message"] == "Failed to refresh access token after retries"

    def test_cancel_stops_at_page_boundary(self):
        users, profiles = population(50)
        cancel = threading.Event()

        def stop_after_first_page(event):
            if event.type == ValidationEvent.CHECKPOINT:
                cancel.set()

        with MockIdentityServer(users=users, profiles=profiles) as server:
            validator, events = run_validation(server, cancel=cancel,
                                               on_event=stop_after_first_page)
            # The current page plus at most one page of lookahead
            assert len(server.directory_requests) <= 2

        final = events[-1]
        assert final.type == ValidationEvent.ERROR
        assert final.data["message"] == "Validation aborted by user"
        assert validator.state == RunState.ABORTED
        assert validator.progress.total_processed == 10


# ---------------------------------------------------------------------------
# Artifact lifetime
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestArtifactLifetime:

    def test_long_run_artifact_is_downloadable_after_completion(self):
        users, profiles = population(30)
        users[12]["sn"] = "Byron"
        clock = FakeClock()
        store = JobArtifactStore(clock=clock)

        def slow_pages(event):
            if event.type == ValidationEvent.PROGRESS:
                clock.now += 30 * 60
                # Another job starting mid-run sweeps the store
                store.create()

        with MockIdentityServer(users=users, profiles=profiles) as server:
            _, events = run_validation(server, store=store, on_event=slow_pages)

        final = events[-1]
        assert final.type == ValidationEvent.COMPLETE
        artifact = store.get(final.data["jobId"])
        assert artifact.complete
        assert artifact.row_count == 1

        clock.now += 59 * 60
        assert store.get(final.data["jobId"]) is artifact

    def test_aborted_run_leaves_no_artifact(self):
        users, profiles = population(30)
        store = JobArtifactStore()
        cancel = threading.Event()

        def stop(event):
            if event.type == ValidationEvent.CHECKPOINT:
                cancel.set()

        with MockIdentityServer(users=users, profiles=profiles) as server:
            _, events = run_validation(server, store=store, cancel=cancel, on_event=stop)
        assert events[-1].type == ValidationEvent.ERROR
        assert len(store) == 0


# ---------------------------------------------------------------------------
# Prefetcher
# ---------------------------------------------------------------------------

class FakePage:
    def __init__(self, cursor, next_cursor):
        self.records = [cursor]
        self.next_cursor = next_cursor

    @property
    def is_last(self):
        return not self.next_cursor


class TestPagePrefetcher:

    def test_stays_one_page_ahead(self):
        async def scenario():
            fetched = []

            async def fetch(cursor):
                fetched.append(cursor)
                number = int(cursor or 0)
                return FakePage(number, str(number + 1) if number < 5 else None)

            pager = PagePrefetcher(fetch)
            task = asyncio.ensure_future(pager.run())
            await asyncio.sleep(0.01)
            before_consuming = list(fetched)
            page = await pager.next_page()
            await asyncio.sleep(0.01)
            after_one = list(fetched)
            await pager.close(task)
            return before_consuming, page, after_one

        before_consuming, page, after_one = asyncio.run(scenario())
        assert before_consuming == [None]
        assert page.records == [0]
        assert after_one == [None, "1"]

    def test_error_is_handed_to_consumer(self):
        async def scenario():
            async def fetch(cursor):
                raise RuntimeError("search down")

            pager = PagePrefetcher(fetch)
            task = asyncio.ensure_future(pager.run())
            try:
                await pager.next_page()
            finally:
                await pager.close(task)

        with pytest.raises(RuntimeError, match="search down"):
            asyncio.run(scenario())
