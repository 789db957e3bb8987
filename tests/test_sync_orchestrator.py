"""
Tests for SyncOrchestrator - job lifecycle, per-item vs job-fatal errors,
cooperative cancellation, event stream and job history.

All tests use a mocked fetcher and a mocked FeishuClient.
"""

import asyncio
import re
from unittest.mock import AsyncMock, MagicMock

import pytest

from models.job import FeishuConfig, JobState, SyncJob, SyncRequest
from models.record import ContentKind
from services.contract_validator import ContractMismatchError
from services.feishu_client import FeishuAPIError, FeishuClient
from services.fetcher import BlockedError, RateLimitedFetcher, TransientError
from services.mapper import BOOK_RULES, MOVIE_RULES
from services.sync_orchestrator import (
    ActiveJobConflict,
    InvalidTransition,
    SyncOrchestrator,
    clear_job_state,
)


# ── Helpers ──────────────────────────────────────────────────────────────────

_SUBJECT = re.compile(r"/subject/(\d+)/")


def _book_html(subject_id: str) -> str:
    return (
        "<html><head>"
        f'<link rel="canonical" href="https://book.douban.com/subject/{subject_id}/">'
        f"<title>Book {subject_id} (豆瓣)</title>"
        "</head><body><div id='info'></div></body></html>"
    )


async def _default_fetch(url: str) -> str:
    return _book_html(_SUBJECT.search(url).group(1))


def _ids(n, start=1000001):
    return [str(start + i) for i in range(n)]


def _make_orchestrator(sync_config, fetch=None, existing=None, db=None, max_concurrent_jobs=2, rules=BOOK_RULES):
    fetcher = MagicMock(spec=RateLimitedFetcher)
    fetcher.fetch = AsyncMock(side_effect=fetch or _default_fetch)

    destination = MagicMock(spec=FeishuClient)
    destination.get_existing_ids = AsyncMock(return_value=set(existing or ()))
    destination.list_fields = AsyncMock(return_value=[r.to_destination_field() for r in rules])
    destination.create_record = AsyncMock(return_value="recNew")

    orchestrator = SyncOrchestrator(
        config=sync_config,
        destination=destination,
        fetcher_factory=lambda: fetcher,
        db=db,
        max_concurrent_jobs=max_concurrent_jobs,
    )
    return orchestrator, fetcher, destination


async def _collect_events(orchestrator, job_id, max_events=100):
    """Collect all events from a job stream."""
    events = []
    async for event in orchestrator.event_stream(job_id):
        if event["event"] == "heartbeat":
            continue
        events.append(event)
        if event["event"] in ("complete", "error") or len(events) >= max_events:
            break
    return events


@pytest.fixture(autouse=True)
def _clear_jobs():
    clear_job_state()
    yield
    clear_job_state()


# ── Test: Happy path ─────────────────────────────────────────────────────────


class TestSyncFlow:
    @pytest.mark.asyncio
    async def test_writes_every_item(self, sync_config):
        orchestrator, fetcher, destination = _make_orchestrator(sync_config)

        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(3)))
        assert job.state == JobState.QUEUED

        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.state == JobState.SUCCEEDED
        assert job.items_seen == 3
        assert job.items_written == 3
        assert destination.create_record.await_count == 3
        table_id, fields = destination.create_record.await_args_list[0].args
        assert table_id == "tblBooks"
        assert fields["Subject ID"] == "1000001"
        assert fields["书名"] == "Book 1000001"
        assert job.duration_ms is not None

    @pytest.mark.asyncio
    async def test_index_and_columns_loaded_once_per_table(self, sync_config):
        orchestrator, _, destination = _make_orchestrator(sync_config)

        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(4)))
        await orchestrator.wait_for(job.job_id, timeout=5)

        destination.get_existing_ids.assert_awaited_once_with("tblBooks", "Subject ID")
        destination.list_fields.assert_awaited_once_with("tblBooks")

    @pytest.mark.asyncio
    async def test_existing_items_skipped_without_fetch(self, sync_config):
        orchestrator, fetcher, destination = _make_orchestrator(sync_config, existing={"1000002"})

        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(3)))
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.items_written == 2
        assert job.items_skipped == 1
        assert fetcher.fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_repeated_id_in_run_is_skipped(self, sync_config):
        orchestrator, _, destination = _make_orchestrator(sync_config)

        job = await orchestrator.start_job(
            SyncRequest(user_id="ahbei", subject_ids=["1000001", "1000001"]),
        )
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.items_written == 1
        assert job.items_skipped == 1

    @pytest.mark.asyncio
    async def test_limit_caps_items(self, sync_config):
        orchestrator, fetcher, _ = _make_orchestrator(sync_config)

        job = await orchestrator.start_job(
            SyncRequest(user_id="ahbei", subject_ids=_ids(5), limit=2),
        )
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.items_seen == 2
        assert fetcher.fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_enumerates_shelf_pages(self, sync_config):
        list_html = (
            "<html><body>"
            '<span class="subject-num">1-2 / 2</span>'
            '<div class="item-show"><div class="title"><a href="https://book.douban.com/subject/2000001/">A</a></div>'
            '<div class="date"><span class="rating4-t"></span> 2023-01-01</div></div>'
            '<div class="item-show"><div class="title"><a href="https://book.douban.com/subject/2000002/">B</a></div>'
            '<div class="date">2023-01-02</div></div>'
            "</body></html>"
        )

        async def fetch(url):
            if "/people/" in url:
                return list_html
            return await _default_fetch(url)

        orchestrator, fetcher, destination = _make_orchestrator(sync_config, fetch=fetch)

        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", statuses=["collect"]))
        await orchestrator.wait_for(job.job_id, timeout=5)

        urls = [c.args[0] for c in fetcher.fetch.await_args_list]
        assert urls[0].startswith("https://book.douban.com/people/ahbei/collect?start=0")
        assert job.items_seen == 2
        assert job.items_written == 2
        fields = destination.create_record.await_args_list[0].args[1]
        assert fields["我的状态"] == "读过"
        assert fields["我的评分"] == 4


# ── Test: Error taxonomy ─────────────────────────────────────────────────────


class TestItemFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_counts_and_continues(self, sync_config):
        async def fetch(url):
            if "1000002" in url:
                raise TransientError(url, "timeout", attempts=3)
            return await _default_fetch(url)

        orchestrator, _, _ = _make_orchestrator(sync_config, fetch=fetch)
        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(3)))
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.state == JobState.SUCCEEDED
        assert job.items_failed == 1
        assert job.items_written == 2
        assert job.error_kind is None

    @pytest.mark.asyncio
    async def test_unparseable_page_is_item_failure(self, sync_config):
        async def fetch(url):
            return "<html><body>no id</body></html>"

        orchestrator, _, _ = _make_orchestrator(sync_config, fetch=fetch)
        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=[""]))
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.state == JobState.SUCCEEDED
        assert job.items_failed == 1

    @pytest.mark.asyncio
    async def test_create_error_is_item_failure(self, sync_config):
        orchestrator, _, destination = _make_orchestrator(sync_config)
        destination.create_record.side_effect = [
            "rec1",
            FeishuAPIError(200, 1254045, "FieldNameNotFound"),
            "rec3",
        ]

        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(3)))
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.state == JobState.SUCCEEDED
        assert job.items_written == 2
        assert job.items_failed == 1

    @pytest.mark.asyncio
    async def test_item_failure_is_logged(self, sync_config, caplog):
        async def fetch(url):
            raise TransientError(url, "timeout", attempts=3)

        orchestrator, _, _ = _make_orchestrator(sync_config, fetch=fetch)
        with caplog.at_level("WARNING", logger="shelfsync"):
            job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(1)))
            await orchestrator.wait_for(job.job_id, timeout=5)

        events = [getattr(r, "event", None) for r in caplog.records]
        assert "sync_item_failed" in events


class TestFatalErrors:
    @pytest.mark.asyncio
    async def test_blocked_fails_job(self, sync_config):
        async def fetch(url):
            if "1000002" in url:
                raise BlockedError(url, "HTTP 403", 403)
            return await _default_fetch(url)

        orchestrator, fetcher, _ = _make_orchestrator(sync_config, fetch=fetch)
        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(5)))
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.state == JobState.FAILED
        assert job.error_kind == "blocked"
        assert job.items_written == 1
        assert fetcher.fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_contract_mismatch_fails_job(self, sync_config):
        orchestrator, _, destination = _make_orchestrator(sync_config)
        destination.create_record.side_effect = ContractMismatchError(
            "bitable.records.create", [{"loc": ("msg",), "msg": "Field required"}],
        )

        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(3)))
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.state == JobState.FAILED
        assert job.error_kind == "contract_mismatch"
        assert destination.create_record.await_count == 1

    @pytest.mark.asyncio
    async def test_index_failure_is_destination_error(self, sync_config):
        orchestrator, fetcher, destination = _make_orchestrator(sync_config)
        destination.get_existing_ids.side_effect = FeishuAPIError(200, 91402, "NOTEXIST")

        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(2)))
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.state == JobState.FAILED
        assert job.error_kind == "destination"
        assert job.error == "NOTEXIST"
        assert fetcher.fetch.await_count == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, sync_config):
        orchestrator, _, destination = _make_orchestrator(sync_config)
        destination.list_fields.side_effect = RuntimeError("boom\nsecond line")

        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(1)))
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.state == JobState.FAILED
        assert job.error_kind == "internal"
        assert job.error == "boom"


# ── Test: Cancellation ───────────────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_run_finishes_current_item(self, sync_config):
        """Cancelling during item 5 of 10 processes exactly 5 items."""
        job_ids = []

        async def fetch(url):
            if "1000005" in url:
                await orchestrator.cancel(job_ids[0])
            return await _default_fetch(url)

        orchestrator, fetcher, destination = _make_orchestrator(sync_config, fetch=fetch)
        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(10)))
        job_ids.append(job.job_id)

        events = await _collect_events(orchestrator, job.job_id)
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.state == JobState.CANCELLED
        assert job.items_processed == 5
        assert fetcher.fetch.await_count == 5
        fetched = " ".join(c.args[0] for c in fetcher.fetch.await_args_list)
        for later in _ids(5, start=1000006):
            assert later not in fetched

        complete = [e for e in events if e["event"] == "complete"]
        assert len(complete) == 1
        assert complete[0]["data"]["state"] == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_queued_job(self, sync_config):
        gate = asyncio.Event()

        async def fetch(url):
            await gate.wait()
            return await _default_fetch(url)

        orchestrator, _, _ = _make_orchestrator(sync_config, fetch=fetch, max_concurrent_jobs=1)
        first = await orchestrator.start_job(SyncRequest(user_id="alice", subject_ids=_ids(1)))
        await asyncio.sleep(0)
        second = await orchestrator.start_job(SyncRequest(user_id="bob", subject_ids=_ids(1)))

        cancelled = await orchestrator.cancel(second.job_id)
        assert cancelled.state == JobState.CANCELLED
        assert cancelled.items_seen == 0

        gate.set()
        await orchestrator.wait_for(first.job_id, timeout=5)
        await orchestrator.wait_for(second.job_id, timeout=5)

        assert first.state == JobState.SUCCEEDED
        assert second.state == JobState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_before_task_starts(self, sync_config):
        """Cancelling right after start_job, before the task runs, ends cleanly."""
        orchestrator, fetcher, _ = _make_orchestrator(sync_config)
        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(2)))

        cancelled = await orchestrator.cancel(job.job_id)
        assert cancelled.state == JobState.CANCELLED

        # The background task must return without raising
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.state == JobState.CANCELLED
        assert job.started_at is None
        fetcher.fetch.assert_not_awaited()

        events = await _collect_events(orchestrator, job.job_id)
        assert [e["event"] for e in events] == ["complete"]
        assert events[0]["data"]["state"] == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_during_last_item_still_succeeds(self, sync_config):
        """A cancel that lands after every item was handled does not cut anything short."""
        job_ids = []

        async def fetch(url):
            if "1000003" in url:
                await orchestrator.cancel(job_ids[0])
            return await _default_fetch(url)

        orchestrator, _, _ = _make_orchestrator(sync_config, fetch=fetch)
        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(3)))
        job_ids.append(job.job_id)

        events = await _collect_events(orchestrator, job.job_id)
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.state == JobState.SUCCEEDED
        assert job.items_written == 3
        assert events[-1]["data"]["state"] == "succeeded"

    @pytest.mark.asyncio
    async def test_cancel_finished_job_rejected(self, sync_config):
        orchestrator, _, _ = _make_orchestrator(sync_config)
        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(1)))
        await orchestrator.wait_for(job.job_id, timeout=5)

        with pytest.raises(InvalidTransition):
            await orchestrator.cancel(job.job_id)

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, sync_config):
        orchestrator, _, _ = _make_orchestrator(sync_config)
        assert await orchestrator.cancel("nope") is None


# ── Test: Job control ────────────────────────────────────────────────────────


class TestJobControl:
    @pytest.mark.asyncio
    async def test_one_active_job_per_user(self, sync_config):
        orchestrator, _, _ = _make_orchestrator(sync_config)
        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(1)))

        with pytest.raises(ActiveJobConflict) as exc_info:
            await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(1)))
        assert exc_info.value.job_id == job.job_id

        await orchestrator.wait_for(job.job_id, timeout=5)
        # Finished jobs no longer block the user
        again = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(1)))
        await orchestrator.wait_for(again.job_id, timeout=5)

    @pytest.mark.asyncio
    async def test_get_status_unknown(self, sync_config):
        orchestrator, _, _ = _make_orchestrator(sync_config)
        assert await orchestrator.get_status("missing") is None

    @pytest.mark.asyncio
    async def test_list_jobs_newest_first(self, sync_config):
        orchestrator, _, _ = _make_orchestrator(sync_config)
        a = await orchestrator.start_job(SyncRequest(user_id="alice", subject_ids=_ids(1)))
        await orchestrator.wait_for(a.job_id, timeout=5)
        b = await orchestrator.start_job(SyncRequest(user_id="bob", subject_ids=_ids(1)))
        await orchestrator.wait_for(b.job_id, timeout=5)

        jobs = await orchestrator.list_jobs()
        assert [j.job_id for j in jobs] == [b.job_id, a.job_id]

        only_alice = await orchestrator.list_jobs(user_id="alice")
        assert [j.job_id for j in only_alice] == [a.job_id]

    @pytest.mark.asyncio
    async def test_trigger_type_recorded(self, sync_config):
        orchestrator, _, _ = _make_orchestrator(sync_config)
        job = await orchestrator.start_job(
            SyncRequest(user_id="ahbei", subject_ids=_ids(1), trigger_type="auto"),
        )
        await orchestrator.wait_for(job.job_id, timeout=5)
        assert job.request.trigger_type.value == "auto"


class TestEventStream:
    @pytest.mark.asyncio
    async def test_event_order(self, sync_config):
        orchestrator, _, _ = _make_orchestrator(sync_config, existing={"1000002"})
        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(3)))

        events = await _collect_events(orchestrator, job.job_id)

        assert [e["event"] for e in events] == ["job_started", "item", "item", "item", "complete"]
        outcomes = [e["data"]["outcome"] for e in events if e["event"] == "item"]
        assert outcomes == ["written", "skipped", "written"]
        assert events[-1]["data"]["items_written"] == 2
        assert events[-1]["data"]["state"] == "succeeded"

    @pytest.mark.asyncio
    async def test_finished_job_stream_returns_summary(self, sync_config):
        orchestrator, _, _ = _make_orchestrator(sync_config)
        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(1)))
        await orchestrator.wait_for(job.job_id, timeout=5)

        events = await _collect_events(orchestrator, job.job_id)
        assert len(events) == 1
        assert events[0]["event"] == "complete"

    @pytest.mark.asyncio
    async def test_unknown_job_stream(self, sync_config):
        orchestrator, _, _ = _make_orchestrator(sync_config)
        events = await _collect_events(orchestrator, "missing")
        assert events[0]["event"] == "error"

    @pytest.mark.asyncio
    async def test_stream_for_job_only_in_history(self, sync_config):
        """After a restart, a finished job is still reported from job history."""
        stored = SyncJob(
            job_id="job-before-restart",
            user_id="ahbei",
            request=SyncRequest(user_id="ahbei", subject_ids=_ids(2)),
            state=JobState.SUCCEEDED,
            items_seen=2,
            items_written=2,
            duration_ms=1200,
        )
        collection = MagicMock()
        collection.find_one = AsyncMock(return_value={"_id": "abc", **stored.model_dump(mode="json")})
        db = MagicMock()
        db.__getitem__.return_value = collection

        orchestrator, _, _ = _make_orchestrator(sync_config, db=db)
        events = await _collect_events(orchestrator, "job-before-restart")

        assert len(events) == 1
        assert events[0]["event"] == "complete"
        assert events[0]["data"]["state"] == "succeeded"
        assert events[0]["data"]["items_written"] == 2
        collection.find_one.assert_awaited_once_with({"job_id": "job-before-restart"})


class TestRouting:
    @pytest.mark.asyncio
    async def test_tv_falls_back_to_movie_table(self, sync_config):
        tv_html = (
            '<html><head><link rel="canonical" href="https://movie.douban.com/subject/26794435/"></head>'
            '<body><div id="info">'
            '<span class="pl">类型:</span> <span property="v:genre">剧情</span><br/>'
            '<span class="pl">集数:</span> 12<br/>'
            '<span class="pl">单集片长:</span> 60分钟<br/>'
            "</div></body></html>"
        )

        async def fetch(url):
            return tv_html

        orchestrator, _, destination = _make_orchestrator(sync_config, fetch=fetch)
        job = await orchestrator.start_job(
            SyncRequest(user_id="ahbei", categories=["movies"], subject_ids=["26794435"]),
        )
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert sync_config.feishu.table_for(ContentKind.TV) == "tblMovies"
        assert destination.create_record.await_args.args[0] == "tblMovies"

    @pytest.mark.asyncio
    async def test_tv_in_movie_table_uses_movie_columns(self, sync_config):
        tv_html = (
            '<html><head><link rel="canonical" href="https://movie.douban.com/subject/26302614/">'
            "<title>请回答1988 (豆瓣)</title></head>"
            '<body><div id="info">'
            '<span class="pl">类型:</span> <span property="v:genre">剧情</span><br/>'
            '<span class="pl">首播:</span> 2015-11-06<br/>'
            '<span class="pl">集数:</span> 20<br/>'
            '<span class="pl">单集片长:</span> 90分钟<br/>'
            "</div></body></html>"
        )

        async def fetch(url):
            return tv_html

        orchestrator, _, destination = _make_orchestrator(sync_config, fetch=fetch, rules=MOVIE_RULES)
        job = await orchestrator.start_job(
            SyncRequest(user_id="ahbei", categories=["movies"], subject_ids=["26302614"]),
        )
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.state == JobState.SUCCEEDED
        assert job.items_written == 1
        assert job.fields_dropped == 0
        table_id, fields = destination.create_record.await_args.args
        assert table_id == "tblMovies"
        assert fields["电影名"] == "请回答1988"
        assert "2015-11-06" in fields["上映日期"]
        assert "片名" not in fields
        assert "首播日期" not in fields

    @pytest.mark.asyncio
    async def test_documentary_in_movie_table_uses_movie_columns(self, sync_config):
        doc_html = (
            '<html><head><link rel="canonical" href="https://movie.douban.com/subject/26611804/">'
            "<title>地球脉动 第二季 (豆瓣)</title></head>"
            '<body><div id="info">'
            '<span class="pl">类型:</span> <span property="v:genre">纪录片</span><br/>'
            "</div></body></html>"
        )

        async def fetch(url):
            return doc_html

        orchestrator, _, destination = _make_orchestrator(sync_config, fetch=fetch, rules=MOVIE_RULES)
        job = await orchestrator.start_job(
            SyncRequest(user_id="ahbei", categories=["movies"], subject_ids=["26611804"]),
        )
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.fields_dropped == 0
        table_id, fields = destination.create_record.await_args.args
        assert table_id == "tblMovies"
        assert fields["电影名"] == "地球脉动 第二季"
        assert fields["类型"] == "纪录片"
        assert "片名" not in fields

    def test_route_keeps_own_table_and_columns(self):
        config = FeishuConfig(
            app_id="cli_x",
            app_secret="s",
            app_token="bascn",
            table_ids={ContentKind.MOVIE: "tblMovies", ContentKind.TV: "tblTv"},
        )

        assert config.route(ContentKind.TV) == ("tblTv", ContentKind.TV)
        assert config.route(ContentKind.DOCUMENTARY) == ("tblMovies", ContentKind.MOVIE)
        assert config.route(ContentKind.BOOK) == (None, ContentKind.BOOK)


class TestPersistence:
    @pytest.mark.asyncio
    async def test_snapshots_upserted(self, sync_config):
        collection = MagicMock()
        collection.update_one = AsyncMock()
        db = MagicMock()
        db.__getitem__.return_value = collection

        orchestrator, _, _ = _make_orchestrator(sync_config, db=db)
        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(1)))
        await orchestrator.wait_for(job.job_id, timeout=5)

        db.__getitem__.assert_called_with("sync_jobs")
        last_filter, last_update = collection.update_one.await_args.args
        assert last_filter == {"job_id": job.job_id}
        assert last_update["$set"]["state"] == "succeeded"
        assert collection.update_one.await_args.kwargs["upsert"] is True

    @pytest.mark.asyncio
    async def test_persist_failure_does_not_fail_job(self, sync_config):
        collection = MagicMock()
        collection.update_one = AsyncMock(side_effect=RuntimeError("db down"))
        db = MagicMock()
        db.__getitem__.return_value = collection

        orchestrator, _, _ = _make_orchestrator(sync_config, db=db)
        job = await orchestrator.start_job(SyncRequest(user_id="ahbei", subject_ids=_ids(1)))
        await orchestrator.wait_for(job.job_id, timeout=5)

        assert job.state == JobState.SUCCEEDED
