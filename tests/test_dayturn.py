from __future__ import annotations

import json
import os
import sys
import threading
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest
import yaml

import dayturn

UTC = timezone.utc
SAO_PAULO = ZoneInfo("America/Sao_Paulo")
ROOT_DIR = Path(__file__).resolve().parents[1]


class FixedClock(dayturn.Clock):
    def __init__(self, current: datetime) -> None:
        super().__init__(current.tzinfo)
        self.current = current

    def now(self) -> datetime:
        return self.current


def _write_script(path: Path, body: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")


def _base_config(**overrides: object) -> dict:
    config = {
        "version": 1,
        "timezone": "UTC",
        "state_dir": "state",
        "schedule": {"window_minutes": 15, "fallback_offset_seconds": 60},
    }
    config.update(overrides)
    return config


def _write_config(tmp_path: Path, config: dict) -> Path:
    path = tmp_path / "dayturn.yaml"
    path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return path


def _service(tmp_path: Path, clock: dayturn.Clock) -> dayturn.ResetService:
    settings = dayturn.Settings.default(tmp_path, tmp_path / "state")
    return dayturn.build_service(settings, clock=clock)


def _store_state(service: dayturn.ResetService, percent: int, has_goal: bool, day: str) -> None:
    payload = {"percent": percent, "hasGoal": has_goal, "ts": 1704067200000, "day": day}
    assert service.store.write(dayturn.DAILY_STATE_KEY, json.dumps(payload))


def _stored_payload(service: dayturn.ResetService) -> dict:
    found = service.store.read(dayturn.DAILY_STATE_KEY)
    assert found is not None
    return json.loads(found[0])


def test_boot_with_absent_state_writes_optimistic_reset(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 3, 10, 9, 30, tzinfo=UTC))
    service = _service(tmp_path, clock)

    record = service.trigger_reconciliation(dayturn.TriggerCause.BOOT)

    assert record is not None
    assert record.phase == dayturn.PHASE_OPTIMISTIC_RESET
    payload = _stored_payload(service)
    assert payload["percent"] == 0
    assert payload["hasGoal"] is False
    assert payload["day"] == "2024-03-10"
    last = service.get_diagnostic_state()["last_reconciliation"]
    assert last["cause"] == "boot"
    assert last["phase"] == "optimistic_reset"
    assert last["prevHasGoal"] is False


def test_rollover_preserves_has_goal(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 2, 0, 0, 5, tzinfo=UTC))
    service = _service(tmp_path, clock)
    _store_state(service, 42, True, "2024-01-01")

    record = service.trigger_reconciliation("boundary-alarm")

    assert record is not None and record.phase == dayturn.PHASE_OPTIMISTIC_RESET
    payload = _stored_payload(service)
    assert (payload["percent"], payload["hasGoal"], payload["day"]) == (0, True, "2024-01-02")
    assert record.prior_has_goal is True


def test_same_day_is_noop(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 2, 15, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)
    _store_state(service, 57, True, "2024-01-02")
    before = _stored_payload(service)

    for _ in range(3):
        record = service.trigger_reconciliation(dayturn.TriggerCause.USER_FOREGROUNDED)
        assert record is not None and record.phase == dayturn.PHASE_ALREADY_TODAY

    assert _stored_payload(service) == before
    last = service.get_diagnostic_state()["last_reconciliation"]
    assert last["phase"] == "already_today"
    assert "prevHasGoal" not in last


def test_missing_day_forces_reset(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 2, 15, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)
    service.store.write(dayturn.DAILY_STATE_KEY, json.dumps({"percent": 80, "hasGoal": True, "ts": 1}))

    record = service.trigger_reconciliation(dayturn.TriggerCause.MANUAL_DEBUG)

    assert record is not None and record.phase == dayturn.PHASE_OPTIMISTIC_RESET
    assert _stored_payload(service)["day"] == "2024-01-02"
    assert _stored_payload(service)["hasGoal"] is True


def test_unparsable_state_forces_reset(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 2, 15, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)
    service.store.write(dayturn.DAILY_STATE_KEY, "{not json")

    record = service.trigger_reconciliation(dayturn.TriggerCause.PERIODIC_JOB)

    assert record is not None and record.phase == dayturn.PHASE_OPTIMISTIC_RESET
    assert _stored_payload(service) == {
        "percent": 0,
        "hasGoal": False,
        "ts": int(clock.current.timestamp() * 1000),
        "day": "2024-01-02",
    }


def test_concurrent_boundary_triggers_converge(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 2, 0, 0, 1, tzinfo=UTC))
    service = _service(tmp_path, clock)
    _store_state(service, 90, True, "2024-01-01")
    causes = [
        dayturn.TriggerCause.BOUNDARY_ALARM,
        dayturn.TriggerCause.DATE_CHANGED,
        dayturn.TriggerCause.USER_FOREGROUNDED,
        dayturn.TriggerCause.PERIODIC_JOB,
        dayturn.TriggerCause.BOUNDARY_ALARM,
    ]
    threads = [threading.Thread(target=service.trigger_reconciliation, args=(cause,)) for cause in causes]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    payload = _stored_payload(service)
    assert (payload["percent"], payload["hasGoal"], payload["day"]) == (0, True, "2024-01-02")
    assert service.trigger_reconciliation(dayturn.TriggerCause.BOOT).phase == dayturn.PHASE_ALREADY_TODAY


@pytest.mark.parametrize("raw, expected", [(137, 100), (-5, 0), (42.6, 43), ("nope", 0)])
def test_set_daily_progress_clamps(tmp_path: Path, raw: object, expected: int) -> None:
    clock = FixedClock(datetime(2024, 5, 1, 12, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)

    assert service.set_daily_progress(raw, True) is True
    payload = _stored_payload(service)
    assert payload["percent"] == expected
    assert payload["day"] == "2024-05-01"


def test_reads_clamp_out_of_range_percent(tmp_path: Path) -> None:
    service = _service(tmp_path, FixedClock(datetime(2024, 5, 1, 12, 0, tzinfo=UTC)))
    _store_state(service, 250, True, "2024-05-01")

    value = service.get_daily_progress()

    assert value is not None
    assert value["percent"] == 100
    assert value["valid"] is True


def test_stale_recompute_result_is_discarded(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 2, 0, 0, 3, tzinfo=UTC))
    service = _service(tmp_path, clock)
    _store_state(service, 0, True, "2024-01-02")

    assert service.set_daily_progress(75, True, issued_for=date(2024, 1, 1)) is False
    assert _stored_payload(service)["percent"] == 0

    assert service.set_daily_progress(75, True, issued_for=date(2024, 1, 2)) is True
    assert _stored_payload(service)["percent"] == 75


def test_storage_self_heals_from_legacy_namespace(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 2, 10, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)
    legacy_path = service.store.path_for("preferences", dayturn.DAILY_STATE_KEY)
    legacy_path.parent.mkdir(parents=True)
    legacy_path.write_text(json.dumps({"percent": 30, "hasGoal": True, "ts": 1, "day": "2024-01-02"}), encoding="utf-8")

    value = service.get_daily_progress()
    assert value is not None and value["namespace"] == "preferences"
    assert service.trigger_reconciliation(dayturn.TriggerCause.USER_FOREGROUNDED).phase == dayturn.PHASE_ALREADY_TODAY

    assert service.set_daily_progress(55, True) is True
    assert service.store.path_for("state", dayturn.DAILY_STATE_KEY).exists()
    value = service.get_daily_progress()
    assert value is not None
    assert value["namespace"] == "state"
    assert value["percent"] == 55


def test_unreadable_namespace_is_treated_as_absent(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 2, 10, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)
    # A directory where the file should be makes the canonical read fail.
    service.store.path_for("state", dayturn.DAILY_STATE_KEY).mkdir(parents=True)
    legacy_path = service.store.path_for("legacy", dayturn.DAILY_STATE_KEY)
    legacy_path.parent.mkdir(parents=True)
    legacy_path.write_text(json.dumps({"percent": 12, "hasGoal": False, "day": "2024-01-02"}), encoding="utf-8")

    value = service.get_daily_progress()

    assert value is not None
    assert value["namespace"] == "legacy"
    assert value["percent"] == 12


def test_clear_diagnostics_keeps_daily_state(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 2, 10, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)
    service.trigger_reconciliation(dayturn.TriggerCause.BOOT)

    assert service.clear_diagnostics() == 2
    state = service.get_diagnostic_state()
    assert state["last_reconciliation"] is None
    assert state["last_schedule"] is None
    assert state["daily_state"]["day"] == "2024-01-02"
    assert service.store.clear([dayturn.DAILY_STATE_KEY]) == 0

    assert service.clear_daily_state() == 1
    assert service.get_daily_progress() is None


def test_next_boundary_is_strictly_after_now() -> None:
    assert dayturn.next_boundary(datetime(2024, 1, 1, 23, 59, 30, tzinfo=UTC)) == datetime(2024, 1, 2, tzinfo=UTC)
    assert dayturn.next_boundary(datetime(2024, 1, 2, 0, 0, tzinfo=UTC)) == datetime(2024, 1, 3, tzinfo=UTC)

    local = datetime(2024, 6, 15, 22, 0, tzinfo=SAO_PAULO)
    boundary = dayturn.next_boundary(local)
    assert boundary.date() == date(2024, 6, 16)
    assert (boundary.hour, boundary.minute) == (0, 0)
    assert boundary - local == timedelta(hours=2)


def test_initial_delay_is_bounded() -> None:
    assert dayturn.initial_delay(datetime(2024, 1, 1, 23, 0, tzinfo=UTC)) == timedelta(hours=1)
    assert dayturn.initial_delay(datetime(2024, 1, 1, 0, 0, tzinfo=UTC)) == dayturn.JOB_MAX_INITIAL_DELAY
    assert dayturn.initial_delay(datetime(2024, 1, 1, 0, 30, tzinfo=UTC)) == timedelta(hours=23, minutes=30)


def test_job_registered_after_midnight_stays_aligned(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 1, 0, 30, tzinfo=UTC))
    service = _service(tmp_path, clock)

    job = service.job_registrar.ensure()

    assert job is not None
    assert job.next_run_at == datetime(2024, 1, 2, tzinfo=UTC)


def test_arm_schedule_is_idempotent(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 1, 18, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)

    for _ in range(4):
        assert service.arm_schedule() is True

    pending = service.wake_service.pending()
    assert [req.request_id for req in pending] == [dayturn.PRIMARY_REQUEST_ID, dayturn.FALLBACK_REQUEST_ID]
    primary, fallback = pending
    assert primary.trigger_at == datetime(2024, 1, 2, tzinfo=UTC)
    assert fallback.trigger_at == primary.trigger_at + timedelta(seconds=60)
    assert fallback.extras == {"fallback": True}
    assert primary.window == timedelta(minutes=15)
    assert len(service.job_service.jobs()) == 1

    schedule = service.get_diagnostic_state()["last_schedule"]
    assert schedule["forcedWindow"] is True
    assert schedule["midnightAt"] == int(primary.trigger_at.timestamp() * 1000)


def test_periodic_job_is_replaced_on_each_registration(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 1, 22, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)

    first = service.job_registrar.ensure()
    second = service.job_registrar.ensure()

    assert first is not None and second is not None
    assert first.job_id != second.job_id
    job = service.job_service.get(dayturn.DEFAULT_JOB_NAME)
    assert job is not None
    assert job.job_id == second.job_id
    assert job.next_run_at == datetime(2024, 1, 2, tzinfo=UTC)
    assert job.period == dayturn.JOB_PERIOD
    assert dayturn.JOB_TAG in job.tags


def test_corrupt_job_file_is_replaced_on_arm(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 1, 18, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)
    job_path = tmp_path / "state" / "jobs" / f"{dayturn.DEFAULT_JOB_NAME}.json"
    job_path.parent.mkdir(parents=True)
    job_path.write_text("{not json", encoding="utf-8")

    assert service.job_service.get(dayturn.DEFAULT_JOB_NAME) is None
    assert service.job_service.jobs() == []
    assert service.arm_schedule() is True

    job = service.job_service.get(dayturn.DEFAULT_JOB_NAME)
    assert job is not None
    assert job.next_run_at == datetime(2024, 1, 2, tzinfo=UTC)
    assert service.get_diagnostic_state()["worker"]["id"] == job.job_id


def test_debug_wake_is_exact(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 1, 12, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)

    request = service.schedule_debug_wake(45)

    assert request is not None
    stored = service.wake_service.get(dayturn.DEBUG_REQUEST_ID)
    assert stored is not None
    assert stored.exact is True
    assert stored.cause is dayturn.TriggerCause.MANUAL_DEBUG
    assert stored.trigger_at == clock.current + timedelta(seconds=45)


def test_boundary_causes_rearm_but_foreground_does_not(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 1, 12, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)

    service.trigger_reconciliation(dayturn.TriggerCause.USER_FOREGROUNDED)
    assert service.wake_service.pending() == []

    service.trigger_reconciliation(dayturn.TriggerCause.TIMEZONE_CHANGED)
    assert len(service.wake_service.pending()) == 2
    assert service.job_service.jobs() == []

    service.trigger_reconciliation(dayturn.TriggerCause.BOOT)
    assert len(service.job_service.jobs()) == 1


def test_immediate_refresh_rearms(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 1, 12, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)

    record = service.request_immediate_refresh()

    assert record is not None
    assert record.cause is dayturn.TriggerCause.MANUAL_FORCE
    assert len(service.wake_service.pending()) == 2


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("android.intent.action.BOOT_COMPLETED", dayturn.TriggerCause.BOOT),
        ("ACTION_USER_PRESENT", dayturn.TriggerCause.USER_FOREGROUNDED),
        ("timezone-changed", dayturn.TriggerCause.TIMEZONE_CHANGED),
        ("midnight_alarm", dayturn.TriggerCause.BOUNDARY_ALARM),
        ("work_manager", dayturn.TriggerCause.PERIODIC_JOB),
        ("Manual Broadcast", dayturn.TriggerCause.MANUAL_FORCE),
        ("debug_alarm", dayturn.TriggerCause.MANUAL_DEBUG),
    ],
)
def test_signal_names_map_to_causes(raw: str, expected: dayturn.TriggerCause) -> None:
    assert dayturn.cause_from_signal(raw) is expected


def test_unknown_signal_is_ignored(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 1, 12, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)

    assert service.handle_signal("screen_off") is None
    assert service.handle_signal(None) is None
    assert service.get_daily_progress() is None


def test_router_swallows_engine_failure(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 1, 12, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)

    def explode(cause: dayturn.TriggerCause) -> dayturn.ReconciliationRecord:
        raise RuntimeError("store exploded")

    service.engine.reconcile = explode  # type: ignore[assignment]

    assert service.trigger_reconciliation(dayturn.TriggerCause.DATE_CHANGED) is None
    assert len(service.wake_service.pending()) == 2


def test_recompute_deadline_terminates_once(tmp_path: Path) -> None:
    script = tmp_path / "slow.py"
    _write_script(script, "import time\ntime.sleep(30)\n")
    clock = FixedClock(datetime(2024, 1, 2, 0, 0, 2, tzinfo=UTC))
    handoff = dayturn.RecomputeHandoff([sys.executable, str(script)], deadline_seconds=0.2, kill_grace_seconds=1.0)
    service = dayturn.ResetService(
        store=dayturn.StateStore(tmp_path / "state"),
        clock=clock,
        wake_service=dayturn.LocalWakeService(tmp_path / "state" / "wake"),
        job_service=dayturn.LocalJobService(tmp_path / "state" / "jobs"),
        recompute=handoff,
    )
    _store_state(service, 64, False, "2024-01-01")

    service.trigger_reconciliation(dayturn.TriggerCause.BOUNDARY_ALARM)
    ticket = service.engine.last_ticket
    assert ticket is not None
    ticket.wait(15)

    assert ticket.terminated is True
    assert ticket.termination_count == 1
    assert ticket.process.poll() is not None
    assert ticket.day_stamp == date(2024, 1, 2)
    assert _stored_payload(service)["percent"] == 0


def test_recompute_not_requested_on_noop(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 2, 8, 0, tzinfo=UTC))
    script = tmp_path / "noop.py"
    _write_script(script, "print('ok')\n")
    service = dayturn.ResetService(
        store=dayturn.StateStore(tmp_path / "state"),
        clock=clock,
        wake_service=dayturn.LocalWakeService(tmp_path / "state" / "wake"),
        job_service=dayturn.LocalJobService(tmp_path / "state" / "jobs"),
        recompute=dayturn.RecomputeHandoff([sys.executable, str(script)]),
    )
    _store_state(service, 10, True, "2024-01-02")

    service.trigger_reconciliation(dayturn.TriggerCause.USER_FOREGROUNDED)

    assert service.engine.last_ticket is None


def test_recompute_launch_failure_keeps_optimistic_value(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 2, 8, 0, tzinfo=UTC))
    service = dayturn.ResetService(
        store=dayturn.StateStore(tmp_path / "state"),
        clock=clock,
        wake_service=dayturn.LocalWakeService(tmp_path / "state" / "wake"),
        job_service=dayturn.LocalJobService(tmp_path / "state" / "jobs"),
        recompute=dayturn.RecomputeHandoff([str(tmp_path / "missing-binary")]),
    )

    record = service.trigger_reconciliation(dayturn.TriggerCause.BOOT)

    assert record is not None and record.phase == dayturn.PHASE_OPTIMISTIC_RESET
    assert service.engine.last_ticket is None
    assert _stored_payload(service)["percent"] == 0


def test_sample_recompute_publishes_authoritative_value(tmp_path: Path) -> None:
    plan = tmp_path / "plan.json"
    plan.write_text(
        json.dumps({"baseline_words": 1000, "current_words": 1250, "target_words": 2000, "days_remaining": 2}),
        encoding="utf-8",
    )
    state_dir = tmp_path / "state"
    handoff = dayturn.RecomputeHandoff(
        [sys.executable, str(ROOT_DIR / "workers" / "sample" / "recompute_progress.py"), "--plan", str(plan)],
        deadline_seconds=20,
        working_dir=tmp_path,
        env={
            dayturn.ENV_STATE_DIR: str(state_dir),
            "DAYTURN_LOG_FILE": str(tmp_path / "worker.log"),
            "TZ": "UTC",
        },
    )
    clock = dayturn.Clock(UTC)
    service = dayturn.ResetService(
        store=dayturn.StateStore(state_dir),
        clock=clock,
        wake_service=dayturn.LocalWakeService(state_dir / "wake"),
        job_service=dayturn.LocalJobService(state_dir / "jobs"),
        recompute=handoff,
    )

    service.trigger_reconciliation(dayturn.TriggerCause.MANUAL_FORCE)
    ticket = service.engine.last_ticket
    assert ticket is not None
    ticket.wait(30)

    assert ticket.terminated is False
    assert ticket.process.returncode == 0
    value = service.get_daily_progress()
    assert value is not None
    assert value["percent"] == 50
    assert value["hasGoal"] is True


def test_periodic_job_success_and_retry(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 1, 22, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)
    service.job_registrar.ensure()

    clock.current = datetime(2024, 1, 2, 0, 0, 1, tzinfo=UTC)
    job = service.job_service.claim_due(dayturn.DEFAULT_JOB_NAME, clock.current)
    assert job is not None and job.state == dayturn.JOB_STATE_RUNNING
    assert service.job_service.claim_due(dayturn.DEFAULT_JOB_NAME, clock.current) is None

    assert service.run_periodic_job(job) == dayturn.JOB_SUCCESS
    stored = service.job_service.get(dayturn.DEFAULT_JOB_NAME)
    assert stored is not None
    assert stored.state == dayturn.JOB_STATE_ENQUEUED
    assert stored.next_run_at == datetime(2024, 1, 3, tzinfo=UTC)
    assert _stored_payload(service)["day"] == "2024-01-02"

    retried = service.job_service.report(stored.name, stored.job_id, dayturn.JOB_RETRY, clock.current)
    assert retried is not None
    assert retried.run_attempt_count == 1
    assert retried.next_run_at == clock.current + timedelta(seconds=dayturn.DEFAULT_RETRY_BACKOFF_SECONDS)
    worker = service.get_diagnostic_state()["worker"]
    assert worker["attempts"] == 1
    assert worker["id"] == stored.job_id


def test_worker_requests_retry_on_failure(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 2, 1, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)

    def explode(cause: dayturn.TriggerCause) -> dayturn.ReconciliationRecord:
        raise RuntimeError("boom")

    service.engine.reconcile = explode  # type: ignore[assignment]

    assert service.worker.do_work() == dayturn.JOB_RETRY


def test_clock_watcher_detects_changes() -> None:
    clock = FixedClock(datetime(2024, 1, 1, 23, 59, 50, tzinfo=UTC))
    mono = [100.0]
    watcher = dayturn.ClockWatcher(clock, monotonic=lambda: mono[0])

    assert watcher.observe() == []

    clock.current = datetime(2024, 1, 2, 0, 0, 0, tzinfo=UTC)
    mono[0] = 110.0
    assert watcher.observe() == [dayturn.TriggerCause.DATE_CHANGED]

    clock.current = clock.current + timedelta(hours=3)
    mono[0] = 115.0
    assert watcher.observe() == [dayturn.TriggerCause.TIME_CHANGED]

    clock.current = clock.current.astimezone(SAO_PAULO)
    mono[0] = 116.0
    causes = watcher.observe()
    assert dayturn.TriggerCause.TIMEZONE_CHANGED in causes
    assert dayturn.TriggerCause.TIME_CHANGED not in causes


def test_daemon_tick_fires_due_wake_requests(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 1, 23, 50, tzinfo=UTC))
    service = _service(tmp_path, clock)
    _store_state(service, 88, True, "2024-01-01")
    service.arm_schedule()
    watcher = dayturn.ClockWatcher(clock, monotonic=lambda: 0.0)
    watcher.observe()

    clock.current = datetime(2024, 1, 2, 0, 2, tzinfo=UTC)
    threads = dayturn.run_daemon_tick(service, watcher)
    for thread in threads:
        thread.join(10)

    payload = _stored_payload(service)
    assert (payload["percent"], payload["hasGoal"], payload["day"]) == (0, True, "2024-01-02")
    pending = service.wake_service.pending()
    assert {req.request_id for req in pending} == {dayturn.PRIMARY_REQUEST_ID, dayturn.FALLBACK_REQUEST_ID}
    assert all(req.trigger_at > clock.current for req in pending)


def test_config_parses_sections(tmp_path: Path) -> None:
    _write_script(tmp_path / "workers" / "recompute.py", "print('ok')\n")
    cfg = _base_config(
        timezone="America/Sao_Paulo",
        store={"canonical": "prefs", "legacy": ["old"]},
        recompute={"script": {"path": "workers/recompute.py", "args": "--plan plan.json"}, "deadline_seconds": 1.5},
    )
    settings = dayturn.parse_config(_write_config(tmp_path, cfg))

    assert settings.timezone == SAO_PAULO
    assert settings.state_dir == (tmp_path / "state").resolve()
    assert settings.store.canonical == "prefs"
    assert settings.store.legacy == ("old",)
    assert settings.schedule.window == timedelta(minutes=15)
    assert settings.recompute.deadline_seconds == 1.5
    assert settings.recompute.script is not None
    assert settings.recompute.script.command()[-2:] == ["--plan", "plan.json"]
    assert settings.display.script is None


def test_config_local_timezone(tmp_path: Path) -> None:
    settings = dayturn.parse_config(_write_config(tmp_path, _base_config(timezone="local")))
    assert settings.timezone is None
    assert settings.timezone_name == "local"


def test_unknown_config_keys_rejected(tmp_path: Path) -> None:
    cfg = _base_config(alarms={"primary": True})
    with pytest.raises(dayturn.ConfigError, match="Unknown keys in top-level"):
        dayturn.parse_config(_write_config(tmp_path, cfg))


def test_unknown_timezone_rejected(tmp_path: Path) -> None:
    cfg = _base_config(timezone="Mars/Olympus")
    with pytest.raises(dayturn.ConfigError, match="Invalid timezone"):
        dayturn.parse_config(_write_config(tmp_path, cfg))


def test_missing_recompute_script_rejected(tmp_path: Path) -> None:
    cfg = _base_config(recompute={"script": {"path": "nope.py"}})
    with pytest.raises(dayturn.ConfigError, match="Script path does not exist"):
        dayturn.parse_config(_write_config(tmp_path, cfg))


def test_invalid_deadline_rejected(tmp_path: Path) -> None:
    cfg = _base_config(recompute={"deadline_seconds": 0})
    with pytest.raises(dayturn.ConfigError, match="deadline_seconds must be > 0"):
        dayturn.parse_config(_write_config(tmp_path, cfg))


def test_cli_set_and_get_progress(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_config(tmp_path, _base_config())

    assert dayturn.main(["--config", str(config_path), "set-progress", "--percent", "137", "--has-goal"]) == 0
    assert '"saved": true' in capsys.readouterr().out

    assert dayturn.main(["--config", str(config_path), "get-progress"]) == 0
    out = capsys.readouterr().out
    assert '"percent": 100' in out
    assert '"namespace": "state"' in out


def test_cli_diagnostics_and_clear(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_config(tmp_path, _base_config())

    assert dayturn.main(["--config", str(config_path), "signal", "BOOT_COMPLETED"]) == 0
    capsys.readouterr()
    assert dayturn.main(["--config", str(config_path), "diagnostics"]) == 0
    out = capsys.readouterr().out
    assert '"cause": "boot"' in out
    assert '"forcedWindow": true' in out

    assert dayturn.main(["--config", str(config_path), "clear-diagnostics"]) == 0
    assert "Removed 2 diagnostic record(s)." in capsys.readouterr().out
    assert os.path.exists(tmp_path / "state" / "state" / "daily_state.json")


def test_cli_rejects_unknown_cause(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, _base_config())
    assert dayturn.main(["--config", str(config_path), "trigger", "--cause", "lunar-eclipse"]) == 1


def test_cli_missing_explicit_config(tmp_path: Path) -> None:
    assert dayturn.main(["--config", str(tmp_path / "absent.yaml"), "validate"]) == 1


def test_daemon_tick_survives_corrupt_job_file(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 1, 23, 50, tzinfo=UTC))
    service = _service(tmp_path, clock)
    _store_state(service, 70, False, "2024-01-01")
    service.wake_scheduler.arm()
    job_path = tmp_path / "state" / "jobs" / f"{dayturn.DEFAULT_JOB_NAME}.json"
    job_path.parent.mkdir(parents=True, exist_ok=True)
    job_path.write_text("{not json", encoding="utf-8")
    watcher = dayturn.ClockWatcher(clock, monotonic=lambda: 0.0)
    watcher.observe()

    clock.current = datetime(2024, 1, 2, 0, 2, tzinfo=UTC)
    threads = dayturn.run_daemon_tick(service, watcher)
    for thread in threads:
        thread.join(10)

    assert threads
    assert _stored_payload(service)["day"] == "2024-01-02"


def test_daemon_tick_logs_job_claim_failure(tmp_path: Path) -> None:
    clock = FixedClock(datetime(2024, 1, 2, 9, 0, tzinfo=UTC))
    service = _service(tmp_path, clock)
    watcher = dayturn.ClockWatcher(clock, monotonic=lambda: 0.0)

    def explode(name: str, now: datetime) -> dayturn.PeriodicJob:
        raise OSError("jobs dir unreadable")

    service.job_service.claim_due = explode  # type: ignore[assignment]

    assert dayturn.run_daemon_tick(service, watcher) == []
