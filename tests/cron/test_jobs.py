"""Tests for cron/jobs.py - schedule parsing, next-run computation and the job store."""

import json
from datetime import datetime, timedelta

import pytest

from cron.jobs import (
    JobNotFoundError,
    JobStore,
    ScheduledJob,
    compute_next_run,
    parse_duration,
    parse_schedule,
)


NOW = datetime(2026, 3, 10, 8, 15, 30)


@pytest.fixture()
def store(tmp_path):
    return JobStore(tmp_path / "cron")


def _job(**kw):
    defaults = dict(id="j1", name="j", agent_id="clawd", platform="telegram",
                    chat_id="1", prompt="p", job_type="cron")
    defaults.update(kw)
    return ScheduledJob(**defaults)


# =========================================================================
# Schedule parsing
# =========================================================================

class TestParseSchedule:
    def test_duration_units(self):
        assert parse_duration("30m") == 30
        assert parse_duration("2h") == 120
        assert parse_duration("1d") == 1440
        with pytest.raises(ValueError):
            parse_duration("soon")

    def test_every_is_recurring(self):
        parsed = parse_schedule("every 2h", NOW)
        assert parsed["job_type"] == "recurring"
        assert parsed["interval_seconds"] == 7200

    def test_zero_interval_rejected(self):
        with pytest.raises(ValueError, match="positive"):
            parse_schedule("every 0m", NOW)

    def test_five_fields_is_cron(self):
        parsed = parse_schedule("*/15 9-17 * * 1-5", NOW)
        assert parsed == {
            "job_type": "cron",
            "cron_expression": "*/15 9-17 * * 1-5",
            "schedule_display": "*/15 9-17 * * 1-5",
        }

    def test_out_of_range_cron_rejected(self):
        with pytest.raises(ValueError):
            parse_schedule("99 * * * *", NOW)

    def test_timestamp_is_one_time(self):
        parsed = parse_schedule("2026-04-01T09:30", NOW)
        assert parsed["job_type"] == "one_time"
        assert parsed["execute_at"] == datetime(2026, 4, 1, 9, 30)

    def test_bare_duration_is_one_time_from_now(self):
        parsed = parse_schedule("45m", NOW)
        assert parsed["job_type"] == "one_time"
        assert parsed["execute_at"] == NOW + timedelta(minutes=45)

    @pytest.mark.parametrize("bad", ["", "tomorrow-ish", "every blue moon", "* * *"])
    def test_garbage_rejected(self, bad):
        with pytest.raises(ValueError):
            parse_schedule(bad, NOW)


# =========================================================================
# Next run
# =========================================================================

class TestComputeNextRun:
    def test_cron_next_is_strictly_after_now(self):
        job = _job(cron_expression="*/5 * * * *")
        assert compute_next_run(job, NOW) == datetime(2026, 3, 10, 8, 20)

    def test_cron_on_exact_boundary_moves_forward(self):
        job = _job(cron_expression="0 9 * * *")
        at_nine = datetime(2026, 3, 10, 9, 0)
        assert compute_next_run(job, at_nine) == datetime(2026, 3, 11, 9, 0)

    def test_recurring_adds_interval(self):
        job = _job(job_type="recurring", interval_seconds=600)
        assert compute_next_run(job, NOW) == NOW + timedelta(minutes=10)

    def test_one_time_runs_once(self):
        at = NOW + timedelta(hours=1)
        job = _job(job_type="one_time", execute_at=at)
        assert compute_next_run(job, NOW) == at
        assert compute_next_run(job, NOW, fired=True) is None


# =========================================================================
# Job store
# =========================================================================

class TestJobStore:
    def test_create_persists_and_schedules(self, store):
        job = store.create_job("Morning summary", "0 9 * * *", platform="telegram", chat_id=42)

        assert job.chat_id == "42"
        assert job.status == "active"
        assert job.next_run_at is not None and job.next_run_at > datetime.now()

        with open(store.jobs_file) as f:
            raw = json.load(f)
        assert raw["jobs"][0]["id"] == job.id
        assert JobStore(store.cron_dir).get_job(job.id).cron_expression == "0 9 * * *"

    def test_create_rejects_empty_prompt_and_bad_action(self, store):
        with pytest.raises(ValueError):
            store.create_job("   ", "every 1h", platform="telegram", chat_id="1")
        with pytest.raises(ValueError):
            store.create_job("hi", "every 1h", platform="telegram", chat_id="1", action="email")
        assert store.load_jobs() == []

    def test_webhook_job_needs_a_url(self, store):
        with pytest.raises(ValueError, match="URL"):
            store.create_job("", "every 1h", action="webhook")

        job = store.create_job("", "every 1h", action="webhook", action_config={"url": "http://localhost/hook"})
        assert job.name == "webhook http://localhost/hook"
        assert store.get_job(job.id).action_config == {"url": "http://localhost/hook"}

    def test_create_rejects_bad_schedule(self, store):
        with pytest.raises(ValueError):
            store.create_job("hi", "whenever", platform="telegram", chat_id="1")

    def test_list_filters(self, store):
        a = store.create_job("a", "every 1h", platform="telegram", chat_id="1")
        store.create_job("b", "every 1h", platform="signal", chat_id="1")
        c = store.create_job("c", "every 1h", platform="telegram", chat_id="2")
        store.set_status(c.id, "disabled")

        assert {j.prompt for j in store.list_jobs()} == {"a", "b"}
        assert {j.prompt for j in store.list_jobs(include_disabled=True)} == {"a", "b", "c"}
        assert [j.id for j in store.list_jobs(platform="telegram", chat_id="1")] == [a.id]

    def test_update_only_touches_given_fields(self, store):
        job = store.create_job("a", "every 1h", platform="telegram", chat_id="1")
        store.update_job(job.id, {"run_count": 3})
        store.update_job(job.id, {"status": "paused"})

        reloaded = store.get_job(job.id)
        assert reloaded.run_count == 3
        assert reloaded.status == "paused"

    def test_update_validation(self, store):
        job = store.create_job("a", "every 1h", platform="telegram", chat_id="1")
        with pytest.raises(ValueError):
            store.update_job(job.id, {"colour": "red"})
        with pytest.raises(ValueError):
            store.update_job(job.id, {"status": "sleeping"})
        assert store.update_job("missing", {"run_count": 1}) is None

    def test_set_status_unknown_job(self, store):
        with pytest.raises(JobNotFoundError):
            store.set_status("missing", "paused")

    def test_remove(self, store):
        job = store.create_job("a", "every 1h", platform="telegram", chat_id="1")
        assert store.remove_job(job.id) is True
        assert store.remove_job(job.id) is False
        assert store.get_job(job.id) is None

    def test_due_jobs_are_active_and_past(self, store):
        past = datetime.now() - timedelta(minutes=1)
        due = store.create_job("due", "every 1h", platform="telegram", chat_id="1")
        paused = store.create_job("paused", "every 1h", platform="telegram", chat_id="1")
        store.create_job("later", "every 1h", platform="telegram", chat_id="1")
        store.update_job(due.id, {"next_run_at": past})
        store.update_job(paused.id, {"next_run_at": past, "status": "paused"})

        assert [j.id for j in store.get_due_jobs()] == [due.id]

    def test_corrupt_file_reads_as_empty(self, store):
        store.ensure_dirs()
        store.jobs_file.write_text("{not json")
        assert store.load_jobs() == []


class TestExecutions:
    def test_add_update_and_list(self, store):
        first = store.add_execution("j1")
        store.add_execution("j2")
        first.status = "completed"
        first.completed_at = datetime.now()
        store.update_execution(first)

        history = store.list_executions("j1")
        assert len(history) == 1
        assert history[0].status == "completed"
        assert len(store.list_executions()) == 2
        assert len(store.list_executions(limit=1)) == 1

    def test_output_file_written(self, store):
        path = store.save_job_output("j1", "# done")
        assert path.parent == store.output_dir / "j1"
        assert path.read_text() == "# done"
