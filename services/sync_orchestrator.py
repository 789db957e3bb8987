"""
Sync Orchestrator - Runs Douban -> Feishu sync jobs in the background.

A job enumerates a user's shelves (or an explicit list of subject ids),
then for each item in order: fetch the detail page, parse it, route it to
a table by content kind, skip it if the table already has the id, map it
onto the table's columns, and create the row.

Progress is emitted as events (dicts) through a per-job asyncio.Queue so
the route layer can stream them as SSE. Every job ends with exactly one
`complete` event followed by a None sentinel.

State machine:
    queued -> running -> succeeded | failed | cancelled
    queued -> cancelled (cancelled before it got a slot)
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from models.destination import DestinationField
from models.job import (
    ALLOWED_TRANSITIONS,
    ItemOutcome,
    JobState,
    SyncConfig,
    SyncJob,
    SyncRequest,
)
from models.record import Category, ContentKind, ItemHint
from services.contract_validator import ContractMismatchError
from services.feishu_client import FeishuAPIError, FeishuClient
from services.fetcher import BlockedError, FetchError, RateLimitedFetcher
from services.list_pages import build_detail_url, build_list_url, parse_list_page, PAGE_SIZE
from services.mapper import map_record, rules_for
from services.parser import ParseIncomplete, parse
from services.reconciler import reconcile

logger = logging.getLogger("shelfsync")

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_MAX_CONCURRENT_JOBS = 2
HEARTBEAT_SECONDS = 15
DEFAULT_HISTORY_LIMIT = 20

CATEGORY_KINDS = {
    Category.BOOKS: (ContentKind.BOOK,),
    Category.MOVIES: (ContentKind.MOVIE, ContentKind.TV, ContentKind.DOCUMENTARY),
}


# ── In-memory job state (keyed by job_id) ────────────────────────────────────

_jobs: dict[str, SyncJob] = {}
_job_queues: dict[str, asyncio.Queue] = {}
_cancel_flags: dict[str, asyncio.Event] = {}
_tasks: dict[str, asyncio.Task] = {}
_slots: Optional[asyncio.Semaphore] = None


def _get_slots(limit: int) -> asyncio.Semaphore:
    """Process-wide job slots, created on first use."""
    global _slots
    if _slots is None:
        _slots = asyncio.Semaphore(limit)
    return _slots


class ActiveJobConflict(Exception):
    """Raised when a user already has a queued or running job."""

    def __init__(self, user_id: str, job_id: str):
        self.user_id = user_id
        self.job_id = job_id
        super().__init__(f"User '{user_id}' already has an active job: {job_id}")


class InvalidTransition(Exception):
    """Raised when a job is asked to move to a state it cannot reach."""

    def __init__(self, job_id: str, from_state: JobState, to_state: JobState):
        self.job_id = job_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Job {job_id} cannot move from {from_state.value} to {to_state.value}"
        )


class _RunState:
    """Per-job caches: existing-id indexes and live columns, keyed by table id."""

    def __init__(self):
        self.indexes: Dict[str, Set[str]] = {}
        self.columns: Dict[str, Dict[str, DestinationField]] = {}
        self.stopped = False  # set when cancellation cut enumeration short


class SyncOrchestrator:
    """
    Owns sync job lifecycles.

    Cheap to construct; all job state lives at module level so any
    instance can read, cancel or stream any job.
    """

    def __init__(
        self,
        config: SyncConfig,
        destination: FeishuClient,
        fetcher_factory: Optional[Callable[[], RateLimitedFetcher]] = None,
        db=None,
        max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS,
    ):
        self._config = config
        self._destination = destination
        self._fetcher_factory = fetcher_factory or (
            lambda: RateLimitedFetcher(config.delay, cookie=config.douban_cookie)
        )
        self._db = db  # MongoDB database instance (injected for testability)
        self._max_concurrent_jobs = max_concurrent_jobs

    def _get_jobs_collection(self):
        """sync_jobs collection, or None when no database is configured."""
        if self._db is not None:
            return self._db["sync_jobs"]
        from database import get_database
        db = get_database()
        return db["sync_jobs"] if db is not None else None

    # ── Public API ──────────────────────────────────────────────────────────

    async def start_job(self, request: SyncRequest) -> SyncJob:
        """
        Enqueue a job and return it in `queued` state.

        Raises:
            ActiveJobConflict: If the user already has an active job.
        """
        for existing in _jobs.values():
            if existing.user_id == request.user_id and not existing.is_terminal:
                raise ActiveJobConflict(request.user_id, existing.job_id)

        job_id = str(uuid.uuid4())
        job = SyncJob(job_id=job_id, user_id=request.user_id, request=request)

        _jobs[job_id] = job
        _job_queues[job_id] = asyncio.Queue()
        _cancel_flags[job_id] = asyncio.Event()

        logger.info(
            "Sync job queued",
            extra={
                "event": "sync_job_queued",
                "job_id": job_id,
                "user_id": request.user_id,
                "categories": [c.value for c in request.categories],
                "trigger_type": request.trigger_type.value,
            },
        )

        await self._persist(job)
        _tasks[job_id] = asyncio.create_task(self._run(job_id))
        return job

    async def get_status(self, job_id: str) -> Optional[SyncJob]:
        """Current job status from memory, else from job history."""
        job = _jobs.get(job_id)
        if job is not None:
            return job

        collection = self._get_jobs_collection()
        if collection is None:
            return None
        try:
            doc = await collection.find_one({"job_id": job_id})
        except Exception as e:
            logger.warning(
                "Job history lookup failed",
                extra={"event": "sync_history_read_failed", "job_id": job_id, "error": str(e)},
            )
            return None
        if doc is None:
            return None
        doc.pop("_id", None)
        return SyncJob.model_validate(doc)

    async def cancel(self, job_id: str) -> Optional[SyncJob]:
        """
        Request cancellation. A queued job is cancelled at once; a running
        job stops before its next item or list page.

        Raises:
            InvalidTransition: If the job already finished.
        """
        job = _jobs.get(job_id)
        if job is None:
            return None
        if job.is_terminal:
            raise InvalidTransition(job_id, job.state, JobState.CANCELLED)

        _cancel_flags[job_id].set()
        logger.info(
            "Sync job cancel requested",
            extra={"event": "sync_job_cancel_requested", "job_id": job_id, "state": job.state.value},
        )

        if job.state == JobState.QUEUED:
            _transition(job, JobState.CANCELLED)
            await self._finish(job, time.time())

        return job

    async def list_jobs(self, user_id: Optional[str] = None, limit: int = DEFAULT_HISTORY_LIMIT) -> List[SyncJob]:
        """Jobs newest first, merged from memory and job history."""
        merged: Dict[str, SyncJob] = {}

        collection = self._get_jobs_collection()
        if collection is not None:
            query = {"user_id": user_id} if user_id else {}
            try:
                cursor = collection.find(query).sort("created_at", -1).limit(limit)
                async for doc in cursor:
                    doc.pop("_id", None)
                    merged[doc["job_id"]] = SyncJob.model_validate(doc)
            except Exception as e:
                logger.warning(
                    "Job history query failed",
                    extra={"event": "sync_history_read_failed", "user_id": user_id, "error": str(e)},
                )

        for job in _jobs.values():
            if user_id is None or job.user_id == user_id:
                merged[job.job_id] = job

        jobs = sorted(merged.values(), key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    async def wait_for(self, job_id: str, timeout: Optional[float] = None):
        """Block until a job's background task ends. Used by scripts and tests."""
        task = _tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    async def event_stream(self, job_id: str) -> AsyncGenerator[dict, None]:
        """
        Async generator that yields progress events for a job.
        Yields dicts with 'event' and 'data' keys.

        If the job already finished, including jobs only known from
        history, yields a single 'complete' event.
        """
        job = _jobs.get(job_id)
        if job is None:
            job = await self.get_status(job_id)
        if job is None:
            yield {"event": "error", "data": {"message": "Job not found"}}
            return

        queue = _job_queues.get(job_id)
        if job.is_terminal and queue is None:
            yield self._make_complete_event(job)
            return

        if queue is None:
            yield {"event": "error", "data": {"message": "Job queue not found"}}
            return

        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                if event is None:
                    # Sentinel: stream is done
                    break
                yield event
            except asyncio.TimeoutError:
                # Heartbeat to keep connection alive
                yield {"event": "heartbeat", "data": {}}

    # ── Job execution ───────────────────────────────────────────────────────

    async def _run(self, job_id: str):
        """The job coroutine. Waits for a slot, then syncs item by item."""
        job = _jobs[job_id]
        if job.state != JobState.QUEUED:
            # Cancelled before the task got its first turn; the stream is already closed
            return

        async with _get_slots(self._max_concurrent_jobs):
            if job.state != JobState.QUEUED:
                # Cancelled while waiting for a slot
                return

            queue = _job_queues[job_id]
            cancel_flag = _cancel_flags[job_id]
            start = time.time()
            _transition(job, JobState.RUNNING)
            job.started_at = datetime.now(timezone.utc)
            await self._persist(job)

            logger.info(
                "Sync job started",
                extra={"event": "sync_job_started", "job_id": job_id, "user_id": job.user_id},
            )
            await queue.put({
                "event": "job_started",
                "data": {
                    "job_id": job_id,
                    "user_id": job.user_id,
                    "categories": [c.value for c in job.request.categories],
                    "trigger_type": job.request.trigger_type.value,
                },
            })

            try:
                completed = await self._sync(job, queue, cancel_flag)
                _transition(job, JobState.SUCCEEDED if completed else JobState.CANCELLED)

            except BlockedError as e:
                self._fail(job, "blocked", f"Blocked by source site: {e.reason}")
            except ContractMismatchError as e:
                self._fail(job, "contract_mismatch", str(e))
            except FeishuAPIError as e:
                self._fail(job, "destination", e.message)
            except Exception as e:
                self._fail(job, "internal", str(e) or type(e).__name__, exc_info=True)

            finally:
                await self._finish(job, start)

    async def _sync(self, job: SyncJob, queue: asyncio.Queue, cancel_flag: asyncio.Event) -> bool:
        """Process every item in order. Returns False when cancellation stopped the run early."""
        fetcher = self._fetcher_factory()
        state = _RunState()
        limit = job.request.limit

        async for hint in self._enumerate(job, fetcher, cancel_flag, state):
            if cancel_flag.is_set():
                state.stopped = True
                break
            if limit is not None and job.items_seen >= limit:
                break

            job.items_seen += 1
            outcome, error = await self._process_item(job, hint, fetcher, state)

            if outcome == ItemOutcome.WRITTEN:
                job.items_written += 1
            elif outcome == ItemOutcome.SKIPPED:
                job.items_skipped += 1
            else:
                job.items_failed += 1

            data = {
                "job_id": job.job_id,
                "external_id": hint.subject_id,
                "title": hint.title,
                "outcome": outcome.value,
                "items_seen": job.items_seen,
                "items_written": job.items_written,
                "items_skipped": job.items_skipped,
                "items_failed": job.items_failed,
            }
            if error:
                data["error"] = error
            await queue.put({"event": "item", "data": data})

        return not state.stopped

    async def _enumerate(
        self,
        job: SyncJob,
        fetcher: RateLimitedFetcher,
        cancel_flag: asyncio.Event,
        state: _RunState,
    ) -> AsyncGenerator[ItemHint, None]:
        """Yield item hints: explicit subject ids, else every shelf page by page."""
        request = job.request

        if request.subject_ids:
            category = request.categories[0]
            for subject_id in request.subject_ids:
                yield ItemHint(subject_id=subject_id, category=category)
            return

        for category in request.categories:
            for status in request.statuses:
                start = 0
                while True:
                    if cancel_flag.is_set():
                        state.stopped = True
                        return
                    url = build_list_url(job.user_id, category, status, start)
                    try:
                        html = await fetcher.fetch(url)
                    except BlockedError:
                        raise
                    except FetchError as e:
                        logger.warning(
                            "List page fetch failed, skipping rest of shelf",
                            extra={
                                "event": "sync_list_page_failed",
                                "job_id": job.job_id,
                                "url": url,
                                "error": str(e),
                            },
                        )
                        break

                    page = parse_list_page(html, category, status, start)
                    logger.info(
                        "List page read",
                        extra={
                            "event": "sync_list_page",
                            "job_id": job.job_id,
                            "category": category.value,
                            "status": status.value,
                            "start": start,
                            "items": len(page.items),
                            "total": page.total,
                        },
                    )
                    for hint in page.items:
                        yield hint

                    if not page.has_more:
                        break
                    start += PAGE_SIZE

    async def _process_item(
        self,
        job: SyncJob,
        hint: ItemHint,
        fetcher: RateLimitedFetcher,
        state: _RunState,
    ) -> Tuple[ItemOutcome, Optional[str]]:
        """Fetch, parse, reconcile and write one item. Item-level errors are returned."""
        # Every table this item could land in already has it: no fetch needed
        tables = self._candidate_tables(hint.category)
        if tables:
            for table_id in tables:
                await self._index_for(table_id, state)
            if all(hint.subject_id in state.indexes[t] for t in tables):
                return ItemOutcome.SKIPPED, None

        url = build_detail_url(hint.category, hint.subject_id)
        try:
            html = await fetcher.fetch(url)
            record = parse(html, hint, url)
        except BlockedError:
            raise
        except (FetchError, ParseIncomplete) as e:
            return self._item_failed(job, hint, str(e))
        except ValidationError as e:
            return self._item_failed(job, hint, f"invalid record: {e.error_count()} errors")

        table_id, table_kind = self._config.feishu.route(record.kind)
        if not table_id:
            return self._item_failed(job, hint, f"no destination table for kind '{record.kind.value}'")

        index = await self._index_for(table_id, state)
        if not reconcile([record], index).to_create:
            return ItemOutcome.SKIPPED, None

        columns = await self._columns_for(table_id, state)
        mapping = map_record(record, rules=rules_for(table_kind), destination_fields=columns)
        job.fields_dropped += len(mapping.dropped)

        try:
            record_id = await self._destination.create_record(table_id, mapping.fields)
        except FeishuAPIError as e:
            return self._item_failed(job, hint, e.message)

        index.add(record.external_id)
        logger.info(
            "Record written",
            extra={
                "event": "sync_item_written",
                "job_id": job.job_id,
                "external_id": record.external_id,
                "kind": record.kind.value,
                "table_id": table_id,
                "record_id": record_id,
                "fields": len(mapping.fields),
                "dropped": len(mapping.dropped),
            },
        )
        return ItemOutcome.WRITTEN, None

    def _candidate_tables(self, category: Category) -> Set[str]:
        kinds = CATEGORY_KINDS.get(category, ())
        tables = {self._config.feishu.table_for(kind) for kind in kinds}
        if None in tables:
            # Some kind has nowhere to go; let the detail page decide
            return set()
        return tables

    async def _index_for(self, table_id: str, state: _RunState) -> Set[str]:
        if table_id not in state.indexes:
            state.indexes[table_id] = await self._destination.get_existing_ids(
                table_id, self._config.feishu.id_field_name,
            )
        return state.indexes[table_id]

    async def _columns_for(self, table_id: str, state: _RunState) -> Dict[str, DestinationField]:
        if table_id not in state.columns:
            fields = await self._destination.list_fields(table_id)
            state.columns[table_id] = {f.display_name: f for f in fields}
        return state.columns[table_id]

    @staticmethod
    def _item_failed(job: SyncJob, hint: ItemHint, error: str) -> Tuple[ItemOutcome, str]:
        logger.warning(
            "Sync item failed",
            extra={
                "event": "sync_item_failed",
                "job_id": job.job_id,
                "external_id": hint.subject_id,
                "error": error,
            },
        )
        return ItemOutcome.FAILED, error

    @staticmethod
    def _fail(job: SyncJob, error_kind: str, error: str, exc_info: bool = False):
        _transition(job, JobState.FAILED)
        job.error_kind = error_kind
        job.error = error.splitlines()[0] if error else error_kind
        logger.error(
            "Sync job failed",
            extra={
                "event": "sync_job_failed",
                "job_id": job.job_id,
                "error_kind": error_kind,
                "error": job.error,
            },
            exc_info=exc_info,
        )

    async def _finish(self, job: SyncJob, start: float):
        """Stamp completion, persist, emit the one complete event and close the stream."""
        job.completed_at = datetime.now(timezone.utc)
        job.duration_ms = round((time.time() - start) * 1000)

        logger.info(
            "Sync job complete",
            extra={
                "event": "sync_job_complete",
                "job_id": job.job_id,
                "state": job.state.value,
                "items_seen": job.items_seen,
                "items_written": job.items_written,
                "items_skipped": job.items_skipped,
                "items_failed": job.items_failed,
                "fields_dropped": job.fields_dropped,
                "duration_ms": job.duration_ms,
            },
        )

        await self._persist(job)

        queue = _job_queues.pop(job.job_id, None)
        if queue is not None:
            await queue.put(self._make_complete_event(job))
            await queue.put(None)  # Sentinel to close the stream

    async def _persist(self, job: SyncJob):
        """Upsert a job snapshot into history. Failures never affect the job."""
        collection = self._get_jobs_collection()
        if collection is None:
            return
        try:
            await collection.update_one(
                {"job_id": job.job_id},
                {"$set": job.model_dump(mode="json")},
                upsert=True,
            )
        except Exception as e:
            logger.warning(
                "Failed to persist job snapshot",
                extra={"event": "sync_history_write_failed", "job_id": job.job_id, "error": str(e)},
            )

    # ── Helpers ──────────────────────────────────────────────────────────────

    @staticmethod
    def _make_complete_event(job: SyncJob) -> dict:
        return {
            "event": "complete",
            "data": {
                "job_id": job.job_id,
                "state": job.state.value,
                "items_seen": job.items_seen,
                "items_written": job.items_written,
                "items_skipped": job.items_skipped,
                "items_failed": job.items_failed,
                "fields_dropped": job.fields_dropped,
                "duration_ms": job.duration_ms,
                "error_kind": job.error_kind,
                "error": job.error,
            },
        }


def _transition(job: SyncJob, new_state: JobState):
    allowed = ALLOWED_TRANSITIONS.get(job.state, frozenset())
    if new_state not in allowed:
        raise InvalidTransition(job.job_id, job.state, new_state)
    job.state = new_state


def clear_job_state():
    """Clear all in-memory job state. Used in tests."""
    global _slots
    _jobs.clear()
    _job_queues.clear()
    _cancel_flags.clear()
    _tasks.clear()
    _slots = None
