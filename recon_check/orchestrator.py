"""Drives a validation run from authentication to the final summary.

``ReconValidator.events()`` is an async generator of ``ValidationEvent``
objects.  Internally two tasks cooperate:

- a **fetcher** that refreshes the access token when needed and pulls
  Directory pages, staying exactly one page ahead of the comparer;
- the **comparer** (the generator body) that resolves each page against the
  Profile Store, runs ``compare()`` per record, appends CSV rows to the job
  artifact, and yields events.

Per page the comparer yields the page's ``mismatch`` events in record order,
then one ``progress`` event, then a ``checkpoint`` event if there is a next
page.  All of that happens before the next page is taken off the fetcher.

Cancellation is cooperative: a ``threading.Event`` is polled once per page.
Lookups already running for the current page, and a lookahead fetch already
in flight, are allowed to finish.

Run states::

    authenticating -> paging -> (batch_resolving -> fallback_resolving
        -> comparing -> emitting)* -> completing -> done
    any non-terminal state -> aborted | failed
"""

import asyncio
import functools
import logging
import math
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from .artifacts import JobArtifact, JobArtifactStore, new_job_id
from .compare import classify, compare, lookup_id
from .config import RunConfig
from .directory import DirectoryClient, DirectoryPage, DirectoryRecord
from .errors import AuthError, ProfileLookupError, SearchError, ValidationAbort
from .limiter import ConcurrencyLimiter
from .models import Checkpoint, RunProgress, ValidationEvent, now_ms
from .profile_store import ProfileRecord, ProfileStoreClient, ProfileStoreSettings
from .retry import FALLBACK_RETRY, SEARCH_RETRY, TOKEN_RETRY, RetryPolicy, retry_with_policy
from .token_provider import AccessToken, fetch_token

logger = logging.getLogger(__name__)


class RunState:
    AUTHENTICATING = "authenticating"
    PAGING = "paging"
    BATCH_RESOLVING = "batch_resolving"
    FALLBACK_RESOLVING = "fallback_resolving"
    COMPARING = "comparing"
    EMITTING = "emitting"
    COMPLETING = "completing"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


class TokenManager:
    """Holds the current access token and refreshes it 60s before expiry."""

    def __init__(
        self,
        token: AccessToken,
        refresh: Callable[[], Awaitable[AccessToken]],
        policy: RetryPolicy = TOKEN_RETRY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.token = token
        self._refresh = refresh
        self._policy = policy
        self._sleep = sleep
        self._clock = clock
        self.refresh_count = 0

    @property
    def access_token(self) -> str:
        return self.token.access_token

    async def ensure_fresh(self):
        """Refresh the token if it is inside the expiry buffer.

        Raises:
            AuthError: if every refresh attempt failed.
        """
        if not self.token.needs_refresh(self._clock()):
            return
        try:
            self.token = await retry_with_policy(self._policy, self._refresh,
                                                 label="Token refresh", sleep=self._sleep)
        except AuthError as exc:
            raise AuthError("Failed to refresh access token after retries", str(exc)) from exc
        self.refresh_count += 1


class PagePrefetcher:
    """Fetches Directory pages one page ahead of the consumer.

    A single credit gates each fetch and is returned when the consumer takes
    a page, so at most one page is fetched or buffered beyond the one being
    processed.  Fetch errors are handed to the consumer in place of a page.
    """

    def __init__(self, fetch: Callable[[Optional[str]], Awaitable[DirectoryPage]],
                 cursor: Optional[str] = None):
        self._fetch = fetch
        self._cursor = cursor
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._credit = asyncio.Semaphore(1)
        self._stopped = False
        self.pages_fetched = 0

    async def run(self):
        cursor = self._cursor
        while True:
            await self._credit.acquire()
            if self._stopped:
                return
            try:
                page = await self._fetch(cursor)
            except Exception as exc:
                await self._queue.put(exc)
                return
            self.pages_fetched += 1
            await self._queue.put(page)
            if page.is_last:
                return
            cursor = page.next_cursor

    async def next_page(self) -> DirectoryPage:
        """Wait for the next page.  Re-raises the fetcher's error, if any."""
        item = await self._queue.get()
        self._credit.release()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self, task: "asyncio.Task[None]"):
        """Stop fetching and wait for any in-flight fetch to finish."""
        self._stopped = True
        self._credit.release()
        await task


class ReconValidator:
    """One validation run.

    Args:
        config:            Connection and mode settings.
        profile_settings:  Profile Store credentials.
        store:             Process-wide artifact store; this run owns one key.
        directory:         Directory client (built from ``config`` if omitted).
        profiles:          Profile Store client (built from settings if omitted).
        token_fetcher:     Callable with ``fetch_token``'s signature.
        rng:               Random source for spot-check sampling (unseeded by default).
        sleep:             Awaitable sleep used for retry backoff.
        token_retry, search_retry, fallback_retry:  Retry policies.
    """

    def __init__(
        self,
        config: RunConfig,
        profile_settings: Optional[ProfileStoreSettings],
        store: JobArtifactStore,
        directory: Optional[DirectoryClient] = None,
        profiles: Optional[ProfileStoreClient] = None,
        token_fetcher: Callable[..., AccessToken] = fetch_token,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        token_retry: RetryPolicy = TOKEN_RETRY,
        search_retry: RetryPolicy = SEARCH_RETRY,
        fallback_retry: RetryPolicy = FALLBACK_RETRY,
    ):
        self.config = config
        self.store = store
        self.directory = directory or DirectoryClient(config.tenant_url,
                                                      tls_no_verify=config.tls_no_verify)
        if profiles is None:
            if profile_settings is None:
                raise ValueError("profile_settings or profiles is required")
            profiles = ProfileStoreClient(profile_settings, tls_no_verify=config.tls_no_verify)
        self.profiles = profiles
        self.token_fetcher = token_fetcher
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.token_retry = token_retry
        self.search_retry = search_retry
        self.fallback_retry = fallback_retry

        self.job_id = new_job_id()
        self.state = RunState.AUTHENTICATING
        self.progress = self._initial_progress()
        self.last_processed_date: Optional[str] = config.resume_last_processed_date
        self.sampled_ids: List[str] = []
        self._sampled_lower: set = set()
        self._mismatch_seq = 0
        if config.resume_progress is not None:
            self._mismatch_seq = config.resume_progress.mismatches + config.resume_progress.errors
        self._executor: Optional[ThreadPoolExecutor] = None
        self._limiter: Optional[ConcurrencyLimiter] = None
        self._tokens: Optional[TokenManager] = None

    # -- Public API ----------------------------------------------------------

    async def events(self, cancel: Optional[threading.Event] = None) -> AsyncIterator[ValidationEvent]:
        """Run the validation, yielding events until ``complete`` or ``error``."""
        cancel = cancel or threading.Event()
        artifact = self.store.create(self.job_id)
        self._executor = ThreadPoolExecutor(max_workers=self.config.concurrency + 2,
                                            thread_name_prefix=f"recon-{self.job_id[-6:]}")
        self._limiter = ConcurrencyLimiter(self.config.concurrency)
        pipeline = self._run(cancel, artifact)
        try:
            async for event in pipeline:
                yield event
        finally:
            await pipeline.aclose()
            self._executor.shutdown(wait=False)

    def run(self, cancel: Optional[threading.Event] = None,
            on_event: Optional[Callable[[ValidationEvent], None]] = None) -> ValidationEvent:
        """Blocking helper: drive ``events()`` to the end and return the terminal event."""
        async def drive():
            last = None
            async for event in self.events(cancel):
                if on_event is not None:
                    on_event(event)
                last = event
            return last

        return asyncio.run(drive())

    # -- Pipeline ------------------------------------------------------------

    async def _run(self, cancel: threading.Event, artifact: JobArtifact) -> AsyncIterator[ValidationEvent]:
        config = self.config
        self.state = RunState.AUTHENTICATING
        logger.info("Authenticating against %s", config.token_endpoint)
        try:
            token = await self._request_token()
        except AuthError as exc:
            self.state = RunState.FAILED
            logger.error("Authentication failed: %s", exc)
            self.store.discard(artifact.job_id)
            yield ValidationEvent.error("Failed to authenticate to the directory", str(exc))
            return

        self._tokens = TokenManager(token, self._request_token, policy=self.token_retry,
                                    sleep=self.sleep)

        if config.is_resume:
            message = (f"Resuming validation from checkpoint "
                       f"({self.progress.total_processed} already processed)...")
        else:
            message = "Authenticated. Starting validation..."
        start = self.progress.to_dict()
        start["message"] = message
        yield ValidationEvent(ValidationEvent.PROGRESS, start)

        pager = PagePrefetcher(self._fetch_page, config.resume_from_cookie)
        fetch_task = asyncio.ensure_future(pager.run())
        try:
            while True:
                if cancel.is_set():
                    raise ValidationAbort("Validation aborted by user")

                self.state = RunState.PAGING
                try:
                    page = await pager.next_page()
                except SearchError as exc:
                    if config.is_resume and pager.pages_fetched == 0:
                        raise SearchError(
                            "Directory rejected the resume cursor; it may have expired",
                            f"{exc}. Start a fresh run bounded by lastProcessedDate "
                            f"({self.last_processed_date or 'unknown'}) instead.",
                        ) from exc
                    raise

                if not page.records:
                    logger.info("Directory returned no records, ending pagination")
                    break

                records = self._select(page.records)
                for event in await self._process(records, artifact):
                    yield event

                self.progress.touch()
                self.state = RunState.EMITTING
                yield ValidationEvent(ValidationEvent.PROGRESS, self.progress.to_dict())
                if page.next_cursor:
                    checkpoint = Checkpoint(page.next_cursor, self.progress.copy(),
                                            self.last_processed_date)
                    yield ValidationEvent(ValidationEvent.CHECKPOINT, checkpoint.to_event_data())

                if page.is_last or self._limit_reached():
                    break

            self.state = RunState.COMPLETING
            self.progress.is_running = False
            self.progress.touch()
            self.store.finalize(artifact.job_id)
            sampled = list(self.sampled_ids) if config.spot_check is not None else None
            logger.info("Validation complete: %r (%d pages, %d token refreshes)",
                        self.progress, pager.pages_fetched, self._tokens.refresh_count)
            self.state = RunState.DONE
            yield ValidationEvent.complete(artifact.job_id, self.progress, sampled)

        except ValidationAbort as exc:
            self.state = RunState.ABORTED
            self.progress.is_running = False
            logger.info("Run %s aborted after %d records", self.job_id, self.progress.total_processed)
            yield ValidationEvent.error(exc.message)
        except (AuthError, SearchError) as exc:
            self.state = RunState.FAILED
            self.progress.is_running = False
            logger.error("Run %s failed: %s", self.job_id, exc)
            yield ValidationEvent.error(exc.message, exc.details)
        except Exception as exc:
            self.state = RunState.FAILED
            self.progress.is_running = False
            logger.exception("Run %s failed unexpectedly", self.job_id)
            yield ValidationEvent.error("Validation failed", str(exc))
        finally:
            if self.state != RunState.DONE:
                self.store.discard(artifact.job_id)
            await pager.close(fetch_task)

    async def _process(self, records: List[DirectoryRecord], artifact: JobArtifact) -> List[ValidationEvent]:
        """Resolve and compare one page; returns its ``mismatch`` events."""
        ids = list(dict.fromkeys(lookup_id(r).lower() for r in records))
        resolved = await self._resolve(ids)

        self.state = RunState.COMPARING
        events = []
        rows = []
        for record in records:
            profile = resolved.get(lookup_id(record).lower())
            mismatches = compare(record, profile, self._next_mismatch_id)
            self.progress.record(classify(mismatches))
            if profile is not None and profile.found:
                self._note_activity(profile)
            for mismatch in mismatches:
                events.append(ValidationEvent(ValidationEvent.MISMATCH, mismatch.to_dict()))
                rows.append(mismatch.csv_row())
        if rows:
            self.store.append(artifact.job_id, rows)
        return events

    async def _resolve(self, ids: List[str]) -> Dict[str, ProfileRecord]:
        """Batch lookup for the page, then bounded individual fallback for misses."""
        if not ids:
            return {}
        self.state = RunState.BATCH_RESOLVING
        try:
            found = await self._call(self.profiles.batch_lookup, ids)
        except ProfileLookupError as exc:
            logger.warning("Batch lookup failed, falling back to individual lookups: %s", exc)
            found = {}
        logger.debug("Batch lookup resolved %d of %d ids", len(found), len(ids))

        missing = [uid for uid in ids if uid not in found]
        if missing:
            self.state = RunState.FALLBACK_RESOLVING
            logger.info("%d ids not in batch results, looking up individually", len(missing))
            results = await asyncio.gather(*(self._fallback(uid) for uid in missing))
            for uid, profile in zip(missing, results):
                if profile is not None:
                    found[uid] = profile
        return found

    async def _fallback(self, uid: str) -> Optional[ProfileRecord]:
        async with self._limiter:
            try:
                return await retry_with_policy(
                    self.fallback_retry,
                    lambda: self._call(self.profiles.individual_lookup, uid),
                    label=f"Profile lookup ({uid[:8]}...)",
                    sleep=self.sleep,
                )
            except ProfileLookupError as exc:
                logger.warning("Fallback lookup failed for %s...: %s", uid[:8], exc)
                return None

    async def _fetch_page(self, cursor: Optional[str]) -> DirectoryPage:
        await self._tokens.ensure_fresh()
        config = self.config
        return await retry_with_policy(
            self.search_retry,
            lambda: self._call(self.directory.search, self._tokens.access_token,
                               config.query_filter, config.page_size, cursor),
            label="Directory search",
            sleep=self.sleep,
        )

    async def _request_token(self) -> AccessToken:
        config = self.config
        return await self._call(self.token_fetcher, config.token_endpoint,
                                config.client_id, config.client_secret, config.scopes,
                                tls_no_verify=config.tls_no_verify)

    # -- Helpers -------------------------------------------------------------

    async def _call(self, fn, *args, **kwargs):
        """Run a blocking client call on this run's thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    def _initial_progress(self) -> RunProgress:
        if self.config.resume_progress is not None:
            progress = self.config.resume_progress.copy()
            progress.is_running = True
            progress.last_update_time = now_ms()
            return progress
        return RunProgress(is_running=True)

    def _next_mismatch_id(self) -> str:
        self._mismatch_seq += 1
        return f"m-{self._mismatch_seq}"

    def _note_activity(self, profile: ProfileRecord):
        date = profile.activity_date
        if date and (not self.last_processed_date or date > self.last_processed_date):
            self.last_processed_date = date

    def _select(self, records: List[DirectoryRecord]) -> List[DirectoryRecord]:
        """Apply the ``max_users`` cap and spot-check sampling to a page."""
        room = len(records)
        if self.config.max_users:
            room = min(room, max(0, self.config.max_users - self.progress.total_processed))
        if self.config.spot_check is not None:
            return self._sample(records, room)
        return records[:room]

    def _sample(self, records: List[DirectoryRecord], room: int) -> List[DirectoryRecord]:
        """Pick this page's sample; only picked records are recorded as sampled."""
        spot = self.config.spot_check
        remaining = min(room, spot.sample_size - len(self.sampled_ids))
        if remaining <= 0:
            return []
        eligible = [
            r for r in records
            if r.id.lower() not in spot.exclude_ids and r.id.lower() not in self._sampled_lower
        ]
        if not eligible:
            return []
        count = min(remaining, max(1, math.ceil(len(eligible) * spot.ratio)))
        # Keep Directory order within the page
        picked = [eligible[i] for i in sorted(self.rng.sample(range(len(eligible)), count))]
        for record in picked:
            self.sampled_ids.append(record.id)
            self._sampled_lower.add(record.id.lower())
        return picked

    def _limit_reached(self) -> bool:
        spot = self.config.spot_check
        if spot is not None and len(self.sampled_ids) >= spot.sample_size:
            logger.info("Spot check sample of %d reached", spot.sample_size)
            return True
        if self.config.max_users and self.progress.total_processed >= self.config.max_users:
            logger.info("Reached max_users limit (%d)", self.config.max_users)
            return True
        return False
