"""
Tests for cron/scheduler.py.

Covers: firing due jobs, advancing schedules, one-shot completion, failure
        isolation between jobs, concurrent firing, manual execution, webhook
        jobs and the cross-process tick lock.
"""

import asyncio
import json
from datetime import datetime, timedelta

import pytest
from aiohttp import test_utils, web

from cron.jobs import JobNotFoundError, JobStore
from cron.scheduler import CronScheduler
from gateway.events import EventEmitter


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@pytest.fixture()
def store(tmp_path):
    return JobStore(tmp_path / "cron")


@pytest.fixture()
def events():
    return EventEmitter()


def _record(events, name):
    seen = []
    events.on(name, seen.append)
    return seen


def _make_due(store, job):
    store.update_job(job.id, {"next_run_at": datetime.now() - timedelta(seconds=5)})


async def _webhook_server(status=200):
    """Local HTTP endpoint that records the requests it receives."""
    received = []

    async def handler(request):
        received.append({
            "method": request.method,
            "content_type": request.content_type,
            "token": request.headers.get("X-Token"),
            "body": await request.text(),
        })
        return web.Response(status=status)

    app = web.Application()
    app.router.add_route("*", "/hook", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    return server, received


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

class TestPoll:
    @pytest.mark.asyncio
    async def test_due_cron_job_fires_once_and_advances(self, store, events):
        job = store.create_job("Status report", "*/5 * * * *", platform="telegram", chat_id="7")
        _make_due(store, job)
        prompts = []

        async def run_agent(j):
            prompts.append(j.prompt)
            return "all good"

        delivered = _record(events, "execute")
        scheduler = CronScheduler(store, run_agent=run_agent, events=events)

        poll_time = datetime.now()
        assert await scheduler.poll() == 1

        assert prompts == ["Status report"]
        assert len(store.list_executions(job.id)) == 1
        assert store.list_executions(job.id)[0].status == "completed"
        updated = store.get_job(job.id)
        assert updated.next_run_at > poll_time
        assert updated.run_count == 1
        assert updated.last_error is None
        assert delivered == [{"job_id": job.id, "platform": "telegram", "chat_id": "7", "message": "all good"}]
        assert list((store.output_dir / job.id).iterdir())

        assert await scheduler.poll() == 0

    @pytest.mark.asyncio
    async def test_one_time_job_does_not_fire_again(self, store, events):
        job = store.create_job("Take the bins out", "10m", platform="signal", chat_id="+1555", action="message")
        _make_due(store, job)
        delivered = _record(events, "execute")
        scheduler = CronScheduler(store, events=events)

        assert await scheduler.poll() == 1
        assert await scheduler.poll() == 0

        assert store.get_job(job.id).next_run_at is None
        assert [d["message"] for d in delivered] == ["Take the bins out"]

    @pytest.mark.asyncio
    async def test_paused_job_is_skipped(self, store):
        job = store.create_job("x", "every 1h", platform="telegram", chat_id="1", action="message")
        _make_due(store, job)
        store.set_status(job.id, "paused")

        assert await CronScheduler(store).poll() == 0

    @pytest.mark.asyncio
    async def test_poll_time_ahead_of_the_clock_is_the_base_for_the_next_run(self, store):
        job = store.create_job("x", "every 1h", platform="telegram", chat_id="1", action="message")
        later = datetime.now() + timedelta(days=1)
        scheduler = CronScheduler(store)

        assert await scheduler.poll(now=later) == 1

        updated = store.get_job(job.id)
        assert updated.next_run_at > later
        assert updated.last_run_at < later
        assert await scheduler.poll(now=later) == 0

    @pytest.mark.asyncio
    async def test_execution_records_duration_and_result(self, store):
        job = store.create_job("hello", "every 1h", platform="telegram", chat_id="1", action="message")

        assert await CronScheduler(store).execute(job.id) is True

        execution = store.list_executions(job.id)[0]
        assert execution.duration_ms >= 0
        assert execution.result == {"response_chars": 5}


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.asyncio
    async def test_failing_job_advances_and_reports(self, store, events):
        job = store.create_job("flaky", "every 1h", platform="telegram", chat_id="1")
        _make_due(store, job)

        async def run_agent(j):
            raise RuntimeError("engine down")

        failed = _record(events, "job_failed")
        delivered = _record(events, "execute")
        scheduler = CronScheduler(store, run_agent=run_agent, events=events)

        assert await scheduler.poll() == 1

        updated = store.get_job(job.id)
        assert updated.status == "active"
        assert updated.next_run_at > datetime.now()
        assert updated.last_error == "RuntimeError: engine down"
        assert store.list_executions(job.id)[0].status == "failed"
        assert failed == [{"job_id": job.id, "error": "RuntimeError: engine down"}]
        assert delivered == []

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_siblings(self, store, events):
        bad = store.create_job("bad", "every 1h", platform="telegram", chat_id="1")
        good = store.create_job("good", "every 1h", platform="telegram", chat_id="2")
        _make_due(store, bad)
        _make_due(store, good)

        async def run_agent(j):
            if j.prompt == "bad":
                raise ValueError("nope")
            return "fine"

        delivered = _record(events, "execute")
        scheduler = CronScheduler(store, run_agent=run_agent, events=events)

        assert await scheduler.poll() == 2
        assert [d["job_id"] for d in delivered] == [good.id]
        assert store.get_job(good.id).run_count == 1
        assert store.get_job(bad.id).run_count == 1

    @pytest.mark.asyncio
    async def test_agent_job_without_runner_fails_cleanly(self, store, events):
        job = store.create_job("x", "every 1h", platform="telegram", chat_id="1")
        failed = _record(events, "job_failed")

        assert await CronScheduler(store, events=events).execute(job.id) is False
        assert "No agent runner" in failed[0]["error"]


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_due_jobs_in_one_poll_run_concurrently(self, store):
        for name in ("one", "two"):
            _make_due(store, store.create_job(name, "every 1h", platform="telegram", chat_id=name))

        started = []
        both_started = asyncio.Event()

        async def run_agent(j):
            started.append(j.prompt)
            if len(started) == 2:
                both_started.set()
            await both_started.wait()
            return j.prompt

        scheduler = CronScheduler(store, run_agent=run_agent)
        assert await asyncio.wait_for(scheduler.poll(), timeout=2) == 2
        assert sorted(started) == ["one", "two"]

    @pytest.mark.asyncio
    async def test_job_already_firing_is_not_fired_twice(self, store):
        job = store.create_job("slow", "every 1h", platform="telegram", chat_id="1")
        release = asyncio.Event()
        calls = []

        async def run_agent(j):
            calls.append(j.id)
            await release.wait()
            return "done"

        scheduler = CronScheduler(store, run_agent=run_agent)
        first = asyncio.create_task(scheduler.execute(job.id))
        await asyncio.sleep(0.01)

        assert await scheduler.execute(job.id) is False
        release.set()
        assert await first is True
        assert calls == [job.id]

    @pytest.mark.asyncio
    async def test_held_tick_lock_skips_poll(self, store):
        fcntl = pytest.importorskip("fcntl")
        job = store.create_job("x", "every 1h", platform="telegram", chat_id="1", action="message")
        _make_due(store, job)
        scheduler = CronScheduler(store)

        with open(scheduler.lock_path, "w") as holder:
            fcntl.flock(holder, fcntl.LOCK_EX | fcntl.LOCK_NB)
            assert await scheduler.poll() == 0
            fcntl.flock(holder, fcntl.LOCK_UN)

        assert await scheduler.poll() == 1


# ---------------------------------------------------------------------------
# Manual execution and lifecycle
# ---------------------------------------------------------------------------

class TestExecuteAndLifecycle:
    @pytest.mark.asyncio
    async def test_execute_unknown_job(self, store):
        with pytest.raises(JobNotFoundError):
            await CronScheduler(store).execute("missing")

    @pytest.mark.asyncio
    async def test_execute_runs_job_not_yet_due(self, store, events):
        job = store.create_job("ping", "0 9 * * *", platform="telegram", chat_id="1", action="message")
        delivered = _record(events, "execute")

        assert await CronScheduler(store, events=events).execute(job.id) is True
        assert delivered[0]["message"] == "ping"
        assert store.get_job(job.id).run_count == 1

    @pytest.mark.asyncio
    async def test_start_fills_missing_next_run_and_stop_is_idempotent(self, store):
        job = store.create_job("x", "every 1h", platform="telegram", chat_id="1", action="message")
        store.update_job(job.id, {"next_run_at": None})
        scheduler = CronScheduler(store, poll_interval=3600)

        await scheduler.start()
        await scheduler.start()
        assert scheduler.running
        assert store.get_job(job.id).next_run_at is not None

        await scheduler.stop()
        await scheduler.stop()
        assert not scheduler.running

    def test_fired_one_time_job_is_not_rescheduled(self, store):
        job = store.create_job("x", "10m", platform="telegram", chat_id="1", action="message")
        store.update_job(job.id, {"next_run_at": None, "run_count": 1})

        assert CronScheduler(store).initialize_schedules() == 0
        assert store.get_job(job.id).next_run_at is None


# ---------------------------------------------------------------------------
# Webhook jobs
# ---------------------------------------------------------------------------

class TestWebhookJobs:
    @pytest.mark.asyncio
    async def test_webhook_job_posts_configured_request(self, store, events):
        server, received = await _webhook_server()
        try:
            job = store.create_job("", "every 1h", action="webhook", action_config={
                "url": str(server.make_url("/hook")),
                "headers": {"X-Token": "abc"},
                "body": {"ping": 1},
            })
            delivered = _record(events, "execute")

            assert await CronScheduler(store, events=events).execute(job.id) is True
        finally:
            await server.close()

        assert received == [{
            "method": "POST",
            "content_type": "application/json",
            "token": "abc",
            "body": json.dumps({"ping": 1}),
        }]
        execution = store.list_executions(job.id)[0]
        assert execution.status == "completed"
        assert execution.result == {"status": 200, "reason": "OK"}
        assert execution.duration_ms >= 0
        assert delivered[0]["message"] == ""

    @pytest.mark.asyncio
    async def test_webhook_non_2xx_fails_and_still_advances(self, store, events):
        server, received = await _webhook_server(status=503)
        try:
            job = store.create_job("", "every 1h", action="webhook", action_config={
                "url": str(server.make_url("/hook")),
                "method": "put",
            })
            _make_due(store, job)
            failed = _record(events, "job_failed")

            assert await CronScheduler(store, events=events).poll() == 1
        finally:
            await server.close()

        assert received[0]["method"] == "PUT"
        assert failed == [{"job_id": job.id, "error": "RuntimeError: Webhook returned 503: Service Unavailable"}]
        execution = store.list_executions(job.id)[0]
        assert execution.status == "failed"
        assert execution.result == {"status": 503, "reason": "Service Unavailable"}
        updated = store.get_job(job.id)
        assert updated.next_run_at > datetime.now()
        assert updated.last_error.startswith("RuntimeError: Webhook returned 503")
