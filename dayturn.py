#!/usr/bin/env python3
"""
dayturn.py

Daily progress reset orchestrator. Arms redundant wake-ups for every local
midnight, reconciles the persisted daily state against "today" idempotently,
and hands off to an external recompute script under a bounded deadline.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import shlex
import subprocess
import sys
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from datetime import time as dt_time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None

try:
    from croniter import croniter
except ImportError:  # pragma: no cover - dependency check at runtime
    croniter = None


LOG_FILE = os.getenv("DAYTURN_LOG_FILE", "dayturn.log")
DEFAULT_CONFIG = "dayturn.yaml"
DEFAULT_STATE_DIR = ".dayturn"
DEFAULT_POLL_SECONDS = 5
DEFAULT_CANONICAL_NAMESPACE = "state"
DEFAULT_LEGACY_NAMESPACES = ("state_native", "preferences", "legacy")
DEFAULT_WINDOW_MINUTES = 15
DEFAULT_FALLBACK_OFFSET_SECONDS = 60
DEFAULT_JOB_NAME = "daily-refresh"
DEFAULT_RECOMPUTE_DEADLINE_SECONDS = 2.0
DEFAULT_RECOMPUTE_KILL_GRACE_SECONDS = 1.0
DEFAULT_RETRY_BACKOFF_SECONDS = 30
DEFAULT_TIME_JUMP_SECONDS = 90

BOUNDARY_CRON = "0 0 * * *"
JOB_PERIOD = timedelta(hours=24)
JOB_MIN_INITIAL_DELAY = timedelta(minutes=5)
JOB_MAX_INITIAL_DELAY = timedelta(hours=23)
JOB_TAG = "daily_refresh_periodic"

DAILY_STATE_KEY = "daily_state"
RECONCILIATION_KEY = "last_reconciliation"
SCHEDULE_KEY = "last_schedule"
DIAGNOSTIC_KEYS = (RECONCILIATION_KEY, SCHEDULE_KEY)

PRIMARY_REQUEST_ID = 1010
FALLBACK_REQUEST_ID = 1011
DEBUG_REQUEST_ID = 2020

PHASE_OPTIMISTIC_RESET = "optimistic_reset"
PHASE_ALREADY_TODAY = "already_today"

JOB_SUCCESS = "success"
JOB_RETRY = "retry"
JOB_STATE_ENQUEUED = "ENQUEUED"
JOB_STATE_RUNNING = "RUNNING"

SILENT_RECOMPUTE_FLAG = "--silent-recompute"
ENV_SILENT_RECOMPUTE = "DAYTURN_SILENT_RECOMPUTE"
ENV_DAY_STAMP = "DAYTURN_DAY_STAMP"
ENV_CAUSE = "DAYTURN_CAUSE"
ENV_CONFIG = "DAYTURN_CONFIG"
ENV_STATE_DIR = "DAYTURN_STATE_DIR"
ENV_REFRESH_ORIGIN = "DAYTURN_REFRESH_ORIGIN"

SIGNAL_SEPARATOR_RE = re.compile(r"[\s\-.]+")
SIGNAL_PREFIXES = ("android_intent_action_", "action_")


class DayturnError(Exception):
    """Base error for dayturn."""


class ConfigError(DayturnError):
    """Config validation error."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("dayturn")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


logger = setup_logging()
UTC = timezone.utc


class TriggerCause(str, Enum):
    BOUNDARY_ALARM = "boundary-alarm"
    DATE_CHANGED = "date-changed"
    TIME_CHANGED = "time-changed"
    TIMEZONE_CHANGED = "timezone-changed"
    USER_FOREGROUNDED = "user-foregrounded"
    PERIODIC_JOB = "periodic-job"
    BOOT = "boot"
    MANUAL_DEBUG = "manual-debug"
    MANUAL_FORCE = "manual-force"

    @property
    def is_boundary(self) -> bool:
        return self in BOUNDARY_CAUSES


BOUNDARY_CAUSES = frozenset(
    {
        TriggerCause.BOUNDARY_ALARM,
        TriggerCause.DATE_CHANGED,
        TriggerCause.TIME_CHANGED,
        TriggerCause.TIMEZONE_CHANGED,
        TriggerCause.BOOT,
    }
)

# Raw signal names as delivered by the various trigger sources.
SIGNAL_ALIASES: Dict[str, TriggerCause] = {
    "midnight_alarm": TriggerCause.BOUNDARY_ALARM,
    "alarm": TriggerCause.BOUNDARY_ALARM,
    "date_changed": TriggerCause.DATE_CHANGED,
    "time_changed": TriggerCause.TIME_CHANGED,
    "time_set": TriggerCause.TIME_CHANGED,
    "timezone_changed": TriggerCause.TIMEZONE_CHANGED,
    "user_present": TriggerCause.USER_FOREGROUNDED,
    "user_present_dynamic": TriggerCause.USER_FOREGROUNDED,
    "foreground": TriggerCause.USER_FOREGROUNDED,
    "resume": TriggerCause.USER_FOREGROUNDED,
    "work_manager": TriggerCause.PERIODIC_JOB,
    "periodic": TriggerCause.PERIODIC_JOB,
    "boot_completed": TriggerCause.BOOT,
    "locked_boot_completed": TriggerCause.BOOT,
    "debug_alarm": TriggerCause.MANUAL_DEBUG,
    "force_refresh": TriggerCause.MANUAL_FORCE,
    "manual_broadcast": TriggerCause.MANUAL_FORCE,
}
SIGNAL_ALIASES.update({cause.value.replace("-", "_"): cause for cause in TriggerCause})


def normalize_signal(raw: str) -> str:
    text = SIGNAL_SEPARATOR_RE.sub("_", raw.strip().lower()).strip("_")
    for prefix in SIGNAL_PREFIXES:
        if text.startswith(prefix):
            text = text[len(prefix):]
    return text


def cause_from_signal(raw: Any) -> Optional[TriggerCause]:
    if isinstance(raw, TriggerCause):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return None
    return SIGNAL_ALIASES.get(normalize_signal(raw))


def parse_cause(value: Any) -> TriggerCause:
    cause = cause_from_signal(value)
    if cause is None:
        valid = ", ".join(c.value for c in TriggerCause)
        raise DayturnError(f'Unknown trigger cause "{value}". Expected one of: {valid}.')
    return cause


def clamp_percent(value: Any) -> int:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, min(100, number))


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_epoch_ms(value: Any) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value / 1000.0, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_day(value: Any) -> Optional[date]:
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def _encode(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))


@dataclass(frozen=True)
class DailyState:
    percent: int
    has_goal: bool
    timestamp: datetime
    day_stamp: Optional[date]

    def __post_init__(self) -> None:
        object.__setattr__(self, "percent", clamp_percent(self.percent))

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "percent": self.percent,
            "hasGoal": self.has_goal,
            "ts": _to_epoch_ms(self.timestamp),
        }
        if self.day_stamp is not None:
            payload["day"] = self.day_stamp.isoformat()
        return payload

    @staticmethod
    def from_payload(raw: str) -> "DailyState":
        """Parse a stored payload; raises ValueError when it is not a JSON object."""
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("daily state payload must be a JSON object")
        return DailyState(
            percent=clamp_percent(payload.get("percent", 0)),
            has_goal=_as_bool(payload.get("hasGoal", False)),
            timestamp=_from_epoch_ms(payload.get("ts")) or datetime.fromtimestamp(0, tz=UTC),
            day_stamp=_parse_day(payload.get("day")),
        )


@dataclass(frozen=True)
class ScheduleRecord:
    scheduled_at: datetime
    primary_at: datetime
    fallback_at: datetime
    forced_window: bool

    def to_payload(self) -> Dict[str, Any]:
        return {
            "scheduledTs": _to_epoch_ms(self.scheduled_at),
            "midnightAt": _to_epoch_ms(self.primary_at),
            "fallbackAt": _to_epoch_ms(self.fallback_at),
            "forcedWindow": self.forced_window,
        }


@dataclass(frozen=True)
class ReconciliationRecord:
    timestamp: datetime
    cause: TriggerCause
    phase: str
    prior_has_goal: Optional[bool] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "ts": _to_epoch_ms(self.timestamp),
            "cause": self.cause.value,
            "phase": self.phase,
        }
        if self.prior_has_goal is not None:
            payload["prevHasGoal"] = self.prior_has_goal
        return payload


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except Exception:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class StateStore:
    """Namespaced key-value store: reads scan every namespace, writes land in the canonical one."""

    def __init__(
        self,
        root: Path,
        canonical: str = DEFAULT_CANONICAL_NAMESPACE,
        legacy: Sequence[str] = DEFAULT_LEGACY_NAMESPACES,
    ) -> None:
        self.root = Path(root)
        self.canonical = canonical
        self.legacy = tuple(ns for ns in legacy if ns != canonical)

    @property
    def namespaces(self) -> Tuple[str, ...]:
        return (self.canonical, *self.legacy)

    def path_for(self, namespace: str, key: str) -> Path:
        return self.root / namespace / f"{key}.json"

    def read(self, key: str, namespaces: Optional[Sequence[str]] = None) -> Optional[Tuple[str, str]]:
        for namespace in namespaces or self.namespaces:
            path = self.path_for(namespace, key)
            try:
                if not path.exists():
                    continue
                return path.read_text(encoding="utf-8"), namespace
            except (OSError, ValueError) as exc:
                logger.warning("State store read failed for %s/%s: %s", namespace, key, str(exc))
        return None

    def write(self, key: str, value: str) -> bool:
        try:
            _atomic_write_text(self.path_for(self.canonical, key), value)
            return True
        except (OSError, ValueError) as exc:
            logger.warning("State store write failed for %s/%s: %s", self.canonical, key, str(exc))
            return False

    def clear(self, keys: Sequence[str]) -> int:
        removed = 0
        for key in keys:
            if key == DAILY_STATE_KEY:
                logger.warning("Refusing to clear %s as part of a diagnostics clear.", key)
                continue
            removed += self._remove_everywhere(key)
        return removed

    def remove_daily_state(self) -> int:
        return self._remove_everywhere(DAILY_STATE_KEY)

    def _remove_everywhere(self, key: str) -> int:
        removed = 0
        for namespace in self.namespaces:
            path = self.path_for(namespace, key)
            try:
                if path.exists():
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.warning("State store remove failed for %s/%s: %s", namespace, key, str(exc))
        return removed


def load_daily_state(store: StateStore) -> Tuple[Optional[DailyState], Optional[str], bool]:
    """Return (state, namespace, present); state is None when absent or unparsable."""
    found = store.read(DAILY_STATE_KEY)
    if found is None:
        return None, None, False
    raw, namespace = found
    try:
        return DailyState.from_payload(raw), namespace, True
    except ValueError as exc:
        logger.warning("Unparsable daily state in namespace %s: %s", namespace, str(exc))
        return None, namespace, True


class DiagnosticRecorder:
    """Keeps the single latest reconciliation and schedule record."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def record_reconciliation(self, record: ReconciliationRecord) -> None:
        self.store.write(RECONCILIATION_KEY, _encode(record.to_payload()))

    def record_schedule(self, record: ScheduleRecord) -> None:
        self.store.write(SCHEDULE_KEY, _encode(record.to_payload()))

    def latest_reconciliation(self) -> Optional[Dict[str, Any]]:
        return self._load(RECONCILIATION_KEY)

    def latest_schedule(self) -> Optional[Dict[str, Any]]:
        return self._load(SCHEDULE_KEY)

    def clear(self) -> int:
        return self.store.clear(DIAGNOSTIC_KEYS)

    def _load(self, key: str) -> Optional[Dict[str, Any]]:
        found = self.store.read(key)
        if found is None:
            return None
        raw, namespace = found
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring unparsable diagnostic record %s in %s.", key, namespace)
            return None
        return payload if isinstance(payload, dict) else None


class Clock:
    """Wall clock in a fixed zone, or in the host's local zone when tz is None."""

    def __init__(self, tz: Optional[tzinfo] = None) -> None:
        self.tz = tz

    def now(self) -> datetime:
        if self.tz is not None:
            return datetime.now(tz=self.tz)
        if hasattr(time, "tzset"):
            time.tzset()
        return datetime.now().astimezone()


def system_timezone() -> Tuple[Optional[ZoneInfo], str]:
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            return ZoneInfo(tz_name), tz_name
        except ZoneInfoNotFoundError:
            pass
    return None, "local"


def next_boundary(now: datetime) -> datetime:
    """Local midnight strictly after ``now``, in ``now``'s zone."""
    require_croniter_dependency()
    if now.tzinfo is None:
        raise ValueError("next_boundary requires an aware datetime")
    zone = now.tzinfo
    nxt = croniter(BOUNDARY_CRON, now).get_next(datetime)
    if nxt.tzinfo is None:
        nxt = nxt.replace(tzinfo=zone)
    if nxt <= now:
        nxt = datetime.combine(now.date() + timedelta(days=1), dt_time(0), tzinfo=zone)
    return nxt


def initial_delay(now: datetime) -> timedelta:
    delay = next_boundary(now) - now
    if delay < timedelta(0):
        delay = JOB_MIN_INITIAL_DELAY
    if delay >= JOB_PERIOD:
        delay = JOB_MAX_INITIAL_DELAY
    return delay


@dataclass(frozen=True)
class WakeRequest:
    request_id: int
    trigger_at: datetime
    window: timedelta
    cause: TriggerCause
    exact: bool = False
    extras: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.request_id,
            "triggerAt": _to_epoch_ms(self.trigger_at),
            "windowMs": int(self.window.total_seconds() * 1000),
            "cause": self.cause.value,
            "exact": self.exact,
            "extras": self.extras,
        }

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "WakeRequest":
        trigger_at = _from_epoch_ms(payload.get("triggerAt"))
        if trigger_at is None:
            raise ValueError("wake request is missing triggerAt")
        return WakeRequest(
            request_id=int(payload["id"]),
            trigger_at=trigger_at,
            window=timedelta(milliseconds=int(payload.get("windowMs", 0))),
            cause=parse_cause(payload.get("cause")),
            exact=bool(payload.get("exact", False)),
            extras=dict(payload.get("extras") or {}),
        )


class LocalWakeService:
    """File-backed host for point-in-time wake requests, one file per request id."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, request_id: int) -> Path:
        return self.root / f"{request_id}.json"

    def set_window(self, request: WakeRequest) -> None:
        _atomic_write_text(self._path(request.request_id), _encode(request.to_payload()))

    def get(self, request_id: int) -> Optional[WakeRequest]:
        path = self._path(request_id)
        if not path.exists():
            return None
        return WakeRequest.from_payload(json.loads(path.read_text(encoding="utf-8")))

    def pending(self) -> List[WakeRequest]:
        if not self.root.exists():
            return []
        requests: List[WakeRequest] = []
        for path in sorted(self.root.glob("*.json")):
            try:
                requests.append(WakeRequest.from_payload(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError, DayturnError) as exc:
                logger.warning("Skipping unreadable wake request %s: %s", path.name, str(exc))
        return sorted(requests, key=lambda req: req.trigger_at)

    def due(self, now: datetime) -> List[WakeRequest]:
        return [req for req in self.pending() if req.trigger_at <= now]

    def cancel(self, request_id: int) -> bool:
        return self.consume(request_id)

    def consume(self, request_id: int) -> bool:
        try:
            self._path(request_id).unlink()
            return True
        except FileNotFoundError:
            return False


@dataclass
class PeriodicJob:
    name: str
    job_id: str
    state: str
    run_attempt_count: int
    period: timedelta
    next_run_at: datetime
    registered_at: datetime
    tags: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "id": self.job_id,
            "state": self.state,
            "runAttemptCount": self.run_attempt_count,
            "periodSeconds": int(self.period.total_seconds()),
            "nextRunAt": _to_epoch_ms(self.next_run_at),
            "registeredAt": _to_epoch_ms(self.registered_at),
            "tags": list(self.tags),
        }

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "PeriodicJob":
        next_run_at = _from_epoch_ms(payload.get("nextRunAt"))
        registered_at = _from_epoch_ms(payload.get("registeredAt"))
        if next_run_at is None or registered_at is None:
            raise ValueError("periodic job payload is missing timestamps")
        return PeriodicJob(
            name=str(payload["name"]),
            job_id=str(payload["id"]),
            state=str(payload.get("state", JOB_STATE_ENQUEUED)),
            run_attempt_count=int(payload.get("runAttemptCount", 0)),
            period=timedelta(seconds=int(payload.get("periodSeconds", JOB_PERIOD.total_seconds()))),
            next_run_at=next_run_at,
            registered_at=registered_at,
            tags=list(payload.get("tags") or []),
        )


class LocalJobService:
    """File-backed host for unique, named recurring jobs."""

    def __init__(self, root: Path, retry_backoff: timedelta = timedelta(seconds=DEFAULT_RETRY_BACKOFF_SECONDS)) -> None:
        self.root = Path(root)
        self.retry_backoff = retry_backoff

    def _path(self, name: str) -> Path:
        return self.root / f"{name}.json"

    def _save(self, job: PeriodicJob) -> None:
        _atomic_write_text(self._path(job.name), _encode(job.to_payload()))

    def _load(self, path: Path) -> Optional[PeriodicJob]:
        try:
            return PeriodicJob.from_payload(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable periodic job %s: %s", path.name, str(exc))
            return None

    def get(self, name: str) -> Optional[PeriodicJob]:
        path = self._path(name)
        if not path.exists():
            return None
        return self._load(path)

    def jobs(self) -> List[PeriodicJob]:
        if not self.root.exists():
            return []
        loaded = [self._load(path) for path in sorted(self.root.glob("*.json"))]
        return [job for job in loaded if job is not None]

    def enqueue_unique_periodic(
        self,
        name: str,
        period: timedelta,
        initial_delay: timedelta,
        now: datetime,
        tags: Sequence[str] = (),
        replace: bool = True,
    ) -> PeriodicJob:
        if not replace:
            existing = self.get(name)
            if existing is not None:
                return existing
        job = PeriodicJob(
            name=name,
            job_id=uuid.uuid4().hex,
            state=JOB_STATE_ENQUEUED,
            run_attempt_count=0,
            period=period,
            next_run_at=now + initial_delay,
            registered_at=now,
            tags=list(tags),
        )
        self._save(job)
        return job

    def claim_due(self, name: str, now: datetime) -> Optional[PeriodicJob]:
        job = self.get(name)
        if job is None or job.state != JOB_STATE_ENQUEUED or job.next_run_at > now:
            return None
        job.state = JOB_STATE_RUNNING
        self._save(job)
        return job

    def report(self, name: str, job_id: str, result: str, now: datetime) -> Optional[PeriodicJob]:
        job = self.get(name)
        if job is None or job.job_id != job_id:
            logger.info("Job %s was replaced while running; dropping result %s.", name, result)
            return None
        job.state = JOB_STATE_ENQUEUED
        if result == JOB_SUCCESS:
            job.run_attempt_count = 0
            nxt = job.next_run_at + job.period
            while nxt <= now:
                nxt += job.period
            job.next_run_at = nxt
        else:
            job.run_attempt_count += 1
            job.next_run_at = now + self.retry_backoff
        self._save(job)
        return job


class DisplayRefresher:
    """Fire-and-forget display refresh notification."""

    def __init__(self, command: Optional[Sequence[str]] = None, working_dir: Optional[Path] = None) -> None:
        self.command = list(command) if command else []
        self.working_dir = working_dir

    def notify(self, origin: str) -> None:
        logger.info("Display refresh requested (origin=%s)", origin)
        if not self.command:
            return
        env = os.environ.copy()
        env[ENV_REFRESH_ORIGIN] = origin
        try:
            process = subprocess.Popen(
                self.command,
                cwd=str(self.working_dir) if self.working_dir else None,
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except Exception as exc:
            logger.warning("Display refresh command failed to start: %s", str(exc))
            return
        threading.Thread(target=process.wait, daemon=True, name="dayturn-display-reaper").start()


@dataclass
class RecomputeTicket:
    process: Any
    day_stamp: date
    cause: TriggerCause
    deadline_seconds: float
    terminated: bool = False
    termination_count: int = 0
    supervisor: Optional[threading.Thread] = field(default=None, repr=False)

    def wait(self, timeout: Optional[float] = None) -> None:
        if self.supervisor is not None:
            self.supervisor.join(timeout)


class RecomputeHandoff:
    """Launches the authoritative recompute script and bounds its lifetime."""

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        deadline_seconds: float = DEFAULT_RECOMPUTE_DEADLINE_SECONDS,
        working_dir: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        kill_grace_seconds: float = DEFAULT_RECOMPUTE_KILL_GRACE_SECONDS,
    ) -> None:
        self.command = list(command) if command else []
        self.deadline_seconds = deadline_seconds
        self.working_dir = working_dir
        self.env = dict(env or {})
        self.kill_grace_seconds = kill_grace_seconds

    def request(self, day_stamp: date, cause: TriggerCause) -> Optional[RecomputeTicket]:
        if not self.command:
            logger.info("No recompute script configured; optimistic value stands.")
            return None
        env = os.environ.copy()
        env.update({k: v for k, v in self.env.items() if v is not None})
        env[ENV_SILENT_RECOMPUTE] = "1"
        env[ENV_DAY_STAMP] = day_stamp.isoformat()
        env[ENV_CAUSE] = cause.value
        try:
            process = subprocess.Popen(
                [*self.command, SILENT_RECOMPUTE_FLAG],
                cwd=str(self.working_dir) if self.working_dir else None,
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except Exception as exc:
            logger.warning("Recompute handoff failed to start: %s", str(exc))
            return None

        ticket = RecomputeTicket(
            process=process,
            day_stamp=day_stamp,
            cause=cause,
            deadline_seconds=self.deadline_seconds,
        )
        ticket.supervisor = threading.Thread(
            target=self._supervise,
            args=(ticket,),
            name="dayturn-recompute",
        )
        ticket.supervisor.start()
        logger.info(
            "Recompute requested for %s (cause=%s, deadline=%ss, pid=%s)",
            day_stamp.isoformat(),
            cause.value,
            self.deadline_seconds,
            process.pid,
        )
        return ticket

    def _supervise(self, ticket: RecomputeTicket) -> None:
        try:
            code = ticket.process.wait(timeout=self.deadline_seconds)
            logger.info("Recompute finished before deadline (code=%s)", code)
            return
        except subprocess.TimeoutExpired:
            pass
        self._terminate(ticket)

    def _terminate(self, ticket: RecomputeTicket) -> None:
        if ticket.terminated:
            return
        ticket.terminated = True
        ticket.termination_count += 1
        logger.info("Recompute still running after %ss; terminating.", self.deadline_seconds)
        try:
            ticket.process.terminate()
            ticket.process.wait(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            ticket.process.kill()
            ticket.process.wait()
        except OSError as exc:
            logger.warning("Recompute termination failed: %s", str(exc))


class ReconciliationEngine:
    """Decides reset-or-noop for today from persisted state alone."""

    def __init__(
        self,
        store: StateStore,
        recorder: DiagnosticRecorder,
        clock: Clock,
        display: Optional[DisplayRefresher] = None,
        recompute: Optional[RecomputeHandoff] = None,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.clock = clock
        self.display = display
        self.recompute = recompute
        self.last_ticket: Optional[RecomputeTicket] = None

    def reconcile(self, cause: TriggerCause) -> ReconciliationRecord:
        now = self.clock.now()
        today = now.date()
        logger.debug("Reconciliation %s: unknown -> evaluating", cause.value)

        state, namespace, present = load_daily_state(self.store)
        prior_has_goal = state.has_goal if state is not None else False
        if state is None or state.day_stamp is None:
            needs_reset = True
        else:
            needs_reset = state.day_stamp != today
        logger.info(
            "Reconciliation cause=%s today=%s present=%s namespace=%s stored_day=%s needs_reset=%s",
            cause.value,
            today.isoformat(),
            present,
            namespace,
            state.day_stamp.isoformat() if state is not None and state.day_stamp else None,
            needs_reset,
        )

        if not needs_reset:
            record = ReconciliationRecord(timestamp=now, cause=cause, phase=PHASE_ALREADY_TODAY)
            self.recorder.record_reconciliation(record)
            logger.debug("Reconciliation %s: evaluating -> noop", cause.value)
            return record

        optimistic = DailyState(percent=0, has_goal=prior_has_goal, timestamp=now, day_stamp=today)
        if self.store.write(DAILY_STATE_KEY, _encode(optimistic.to_payload())):
            logger.info("Optimistic reset applied for %s (has_goal=%s)", today.isoformat(), prior_has_goal)
        record = ReconciliationRecord(
            timestamp=now,
            cause=cause,
            phase=PHASE_OPTIMISTIC_RESET,
            prior_has_goal=prior_has_goal,
        )
        self.recorder.record_reconciliation(record)
        if self.display is not None:
            self.display.notify("refresh_scheduler")
        if self.recompute is not None:
            self.last_ticket = self.recompute.request(today, cause)
        logger.debug("Reconciliation %s: evaluating -> reset", cause.value)
        return record


class WakeScheduler:
    """Arms the primary and fallback boundary wake requests."""

    def __init__(
        self,
        wake_service: LocalWakeService,
        recorder: DiagnosticRecorder,
        clock: Clock,
        window: timedelta = timedelta(minutes=DEFAULT_WINDOW_MINUTES),
        fallback_offset: timedelta = timedelta(seconds=DEFAULT_FALLBACK_OFFSET_SECONDS),
    ) -> None:
        self.wake_service = wake_service
        self.recorder = recorder
        self.clock = clock
        self.window = window
        self.fallback_offset = fallback_offset

    def arm(self) -> Optional[ScheduleRecord]:
        now = self.clock.now()
        boundary = next_boundary(now)
        fallback_at = boundary + self.fallback_offset
        requests = [
            WakeRequest(PRIMARY_REQUEST_ID, boundary, self.window, TriggerCause.BOUNDARY_ALARM),
            WakeRequest(
                FALLBACK_REQUEST_ID,
                fallback_at,
                self.window,
                TriggerCause.BOUNDARY_ALARM,
                extras={"fallback": True},
            ),
        ]
        armed = 0
        for request in requests:
            try:
                self.wake_service.set_window(request)
                armed += 1
            except Exception:
                logger.exception("Failed to arm wake request %s", request.request_id)
        if not armed:
            return None
        logger.info(
            "Boundary wake armed at %s (fallback %s, window=%s)",
            boundary.isoformat(),
            fallback_at.isoformat(),
            self.window,
        )
        record = ScheduleRecord(
            scheduled_at=now,
            primary_at=boundary,
            fallback_at=fallback_at,
            forced_window=True,
        )
        self.recorder.record_schedule(record)
        return record

    def arm_debug(self, seconds: int) -> Optional[WakeRequest]:
        request = WakeRequest(
            DEBUG_REQUEST_ID,
            self.clock.now() + timedelta(seconds=seconds),
            timedelta(0),
            TriggerCause.MANUAL_DEBUG,
            exact=True,
        )
        try:
            self.wake_service.set_window(request)
        except Exception:
            logger.exception("Failed to arm debug wake request")
            return None
        logger.info("Debug wake armed for %ss from now", seconds)
        return request


class PeriodicJobRegistrar:
    """Keeps exactly one named daily job registered, aligned to the next boundary."""

    def __init__(self, job_service: LocalJobService, clock: Clock, name: str = DEFAULT_JOB_NAME) -> None:
        self.job_service = job_service
        self.clock = clock
        self.name = name

    def ensure(self) -> Optional[PeriodicJob]:
        now = self.clock.now()
        delay = initial_delay(now)
        try:
            job = self.job_service.enqueue_unique_periodic(
                self.name,
                JOB_PERIOD,
                delay,
                now,
                tags=[JOB_TAG],
                replace=True,
            )
        except Exception:
            logger.exception("Failed to register periodic job %s", self.name)
            return None
        logger.info("Periodic job %s registered (initial_delay=%s, id=%s)", self.name, delay, job.job_id)
        return job


class PeriodicRefreshWorker:
    def __init__(self, engine: ReconciliationEngine, display: Optional[DisplayRefresher], store: StateStore) -> None:
        self.engine = engine
        self.display = display
        self.store = store

    def do_work(self) -> str:
        started = time.monotonic()
        try:
            before = self.store.read(DAILY_STATE_KEY)
            logger.info("Periodic refresh starting; payload before=%s", before[0] if before else None)
            self.engine.reconcile(TriggerCause.PERIODIC_JOB)
            if self.display is not None:
                self.display.notify("worker")
            after = self.store.read(DAILY_STATE_KEY)
            logger.info(
                "Periodic refresh done in %.3fs; payload after=%s",
                time.monotonic() - started,
                after[0] if after else None,
            )
            return JOB_SUCCESS
        except Exception:
            logger.exception("Periodic refresh failed; requesting retry")
            return JOB_RETRY


class TriggerRouter:
    """Single entry point for every trigger source. Never raises."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        wake_scheduler: WakeScheduler,
        job_registrar: Optional[PeriodicJobRegistrar] = None,
    ) -> None:
        self.engine = engine
        self.wake_scheduler = wake_scheduler
        self.job_registrar = job_registrar

    def route(self, cause: TriggerCause, rearm: Optional[bool] = None) -> Optional[ReconciliationRecord]:
        logger.info("Trigger received: cause=%s", cause.value)
        record: Optional[ReconciliationRecord] = None
        try:
            record = self.engine.reconcile(cause)
        except Exception:
            logger.exception("Reconciliation failed for cause=%s", cause.value)

        if cause.is_boundary if rearm is None else rearm:
            try:
                self.wake_scheduler.arm()
            except Exception:
                logger.exception("Re-arming wake scheduler failed for cause=%s", cause.value)
        if cause is TriggerCause.BOOT and self.job_registrar is not None:
            try:
                self.job_registrar.ensure()
            except Exception:
                logger.exception("Re-registering periodic job failed after boot")
        return record

    def handle_signal(self, raw: Any) -> Optional[ReconciliationRecord]:
        try:
            cause = cause_from_signal(raw)
        except Exception:  # pragma: no cover - defensive
            logger.exception("Failed to normalize trigger signal %r", raw)
            return None
        if cause is None:
            logger.warning("Ignoring unknown trigger signal %r", raw)
            return None
        return self.route(cause)


class ResetService:
    """Boundary operations exposed to the host application. None of them raise."""

    def __init__(
        self,
        store: StateStore,
        clock: Clock,
        wake_service: LocalWakeService,
        job_service: LocalJobService,
        display: Optional[DisplayRefresher] = None,
        recompute: Optional[RecomputeHandoff] = None,
        window: timedelta = timedelta(minutes=DEFAULT_WINDOW_MINUTES),
        fallback_offset: timedelta = timedelta(seconds=DEFAULT_FALLBACK_OFFSET_SECONDS),
        job_name: str = DEFAULT_JOB_NAME,
    ) -> None:
        self.store = store
        self.clock = clock
        self.wake_service = wake_service
        self.job_service = job_service
        self.display = display
        self.recorder = DiagnosticRecorder(store)
        self.engine = ReconciliationEngine(store, self.recorder, clock, display=display, recompute=recompute)
        self.wake_scheduler = WakeScheduler(wake_service, self.recorder, clock, window, fallback_offset)
        self.job_registrar = PeriodicJobRegistrar(job_service, clock, job_name)
        self.worker = PeriodicRefreshWorker(self.engine, display, store)
        self.router = TriggerRouter(self.engine, self.wake_scheduler, self.job_registrar)

    def trigger_reconciliation(self, cause: Any) -> Optional[ReconciliationRecord]:
        resolved = cause_from_signal(cause)
        if resolved is None:
            logger.warning("Ignoring reconciliation request with unknown cause %r", cause)
            return None
        return self.router.route(resolved)

    def handle_signal(self, raw: Any) -> Optional[ReconciliationRecord]:
        return self.router.handle_signal(raw)

    def arm_schedule(self) -> bool:
        try:
            armed = self.wake_scheduler.arm() is not None
            registered = self.job_registrar.ensure() is not None
            return armed and registered
        except Exception:
            logger.exception("arm_schedule failed")
            return False

    def request_immediate_refresh(self) -> Optional[ReconciliationRecord]:
        return self.router.route(TriggerCause.MANUAL_FORCE, rearm=True)

    def schedule_debug_wake(self, seconds: int) -> Optional[WakeRequest]:
        try:
            return self.wake_scheduler.arm_debug(seconds)
        except Exception:
            logger.exception("schedule_debug_wake failed")
            return None

    def run_periodic_job(self, job: PeriodicJob) -> str:
        result = self.worker.do_work()
        try:
            self.job_service.report(job.name, job.job_id, result, self.clock.now())
        except Exception:
            logger.exception("Failed to report periodic job result for %s", job.name)
        return result

    def set_daily_progress(self, percent: Any, has_goal: bool, issued_for: Optional[date] = None) -> bool:
        """Authoritative write. A result tagged for a day other than the stored one is dropped."""
        try:
            now = self.clock.now()
            today = now.date()
            if issued_for is not None:
                current, _, _ = load_daily_state(self.store)
                stored_day = current.day_stamp if current is not None else None
                if issued_for != today or stored_day != issued_for:
                    logger.warning(
                        "Discarding recompute result issued for %s (today=%s, stored_day=%s)",
                        issued_for.isoformat(),
                        today.isoformat(),
                        stored_day.isoformat() if stored_day else None,
                    )
                    return False
            state = DailyState(percent=percent, has_goal=bool(has_goal), timestamp=now, day_stamp=today)
            if not self.store.write(DAILY_STATE_KEY, _encode(state.to_payload())):
                return False
            logger.info("Daily progress persisted: percent=%s has_goal=%s", state.percent, state.has_goal)
            if self.display is not None:
                self.display.notify("plugin_set")
            return True
        except Exception:
            logger.exception("set_daily_progress failed")
            return False

    def get_daily_progress(self) -> Optional[Dict[str, Any]]:
        try:
            state, namespace, present = load_daily_state(self.store)
            if not present:
                return None
            if state is None:
                return {"namespace": namespace, "valid": False}
            return {**state.to_payload(), "namespace": namespace, "valid": True}
        except Exception:
            logger.exception("get_daily_progress failed")
            return None

    def get_diagnostic_state(self) -> Dict[str, Any]:
        try:
            worker: Dict[str, Any] = {}
            try:
                job = self.job_service.get(self.job_registrar.name)
                if job is not None:
                    worker = {
                        "id": job.job_id,
                        "state": job.state,
                        "attempts": job.run_attempt_count,
                        "next_run_at": job.next_run_at.isoformat(),
                    }
                worker["queried_at"] = self.clock.now().isoformat()
            except Exception as exc:
                worker = {"error": str(exc)}
            return {
                "daily_state": self.get_daily_progress(),
                "last_reconciliation": self.recorder.latest_reconciliation(),
                "last_schedule": self.recorder.latest_schedule(),
                "worker": worker,
            }
        except Exception as exc:
            logger.exception("get_diagnostic_state failed")
            return {"error": str(exc)}

    def clear_diagnostics(self) -> int:
        try:
            return self.recorder.clear()
        except Exception:
            logger.exception("clear_diagnostics failed")
            return 0

    def clear_daily_state(self) -> int:
        try:
            return self.store.remove_daily_state()
        except Exception:
            logger.exception("clear_daily_state failed")
            return 0


class ClockWatcher:
    """Turns wall-clock observations into date/time/timezone change causes."""

    def __init__(
        self,
        clock: Clock,
        jump_threshold: timedelta = timedelta(seconds=DEFAULT_TIME_JUMP_SECONDS),
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.clock = clock
        self.jump_threshold = jump_threshold
        self._monotonic = monotonic
        self._last_wall: Optional[datetime] = None
        self._last_mono = 0.0

    def observe(self) -> List[TriggerCause]:
        now = self.clock.now()
        mono = self._monotonic()
        previous = self._last_wall
        previous_mono = self._last_mono
        self._last_wall = now
        self._last_mono = mono
        if previous is None:
            return []

        causes: List[TriggerCause] = []
        if (now.utcoffset(), now.tzname()) != (previous.utcoffset(), previous.tzname()):
            causes.append(TriggerCause.TIMEZONE_CHANGED)
        expected = previous + timedelta(seconds=mono - previous_mono)
        if abs(now - expected) > self.jump_threshold:
            causes.append(TriggerCause.TIME_CHANGED)
        if now.date() != previous.date():
            causes.append(TriggerCause.DATE_CHANGED)
        return causes


@dataclass(frozen=True)
class ScriptSpec:
    path: str
    args: List[str]
    resolved_path: Path

    def command(self) -> List[str]:
        return [sys.executable, str(self.resolved_path), *self.args]


@dataclass(frozen=True)
class StoreSettings:
    canonical: str
    legacy: Tuple[str, ...]


@dataclass(frozen=True)
class ScheduleSettings:
    window: timedelta
    fallback_offset: timedelta
    job_name: str


@dataclass(frozen=True)
class RecomputeSettings:
    script: Optional[ScriptSpec]
    deadline_seconds: float


@dataclass(frozen=True)
class DisplaySettings:
    script: Optional[ScriptSpec]


@dataclass(frozen=True)
class Settings:
    config_path: Optional[Path]
    base_dir: Path
    timezone: Optional[ZoneInfo]
    timezone_name: str
    state_dir: Path
    store: StoreSettings
    schedule: ScheduleSettings
    recompute: RecomputeSettings
    display: DisplaySettings

    @staticmethod
    def default(base_dir: Path, state_dir: Optional[Path] = None) -> "Settings":
        zone, zone_name = system_timezone()
        return Settings(
            config_path=None,
            base_dir=base_dir,
            timezone=zone,
            timezone_name=zone_name,
            state_dir=(state_dir or (base_dir / DEFAULT_STATE_DIR)).resolve(),
            store=StoreSettings(canonical=DEFAULT_CANONICAL_NAMESPACE, legacy=DEFAULT_LEGACY_NAMESPACES),
            schedule=ScheduleSettings(
                window=timedelta(minutes=DEFAULT_WINDOW_MINUTES),
                fallback_offset=timedelta(seconds=DEFAULT_FALLBACK_OFFSET_SECONDS),
                job_name=DEFAULT_JOB_NAME,
            ),
            recompute=RecomputeSettings(script=None, deadline_seconds=DEFAULT_RECOMPUTE_DEADLINE_SECONDS),
            display=DisplaySettings(script=None),
        )


def require_yaml_dependency() -> None:
    if yaml is None:
        raise DayturnError(
            "Missing required dependency: PyYAML. Install with: pip install -r requirements.txt"
        )


def require_croniter_dependency() -> None:
    if croniter is None:
        raise DayturnError(
            "Missing required dependency: croniter. Install with: pip install -r requirements.txt"
        )


def parse_timezone(name: str, field_path: str) -> Optional[ZoneInfo]:
    if name == "local":
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_float(value: Any, field_path: str, default: float, minimum: float = 0.0) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a number.")
    if value <= minimum:
        raise ConfigError(f"Error: {field_path} must be > {minimum}.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    require_yaml_dependency()
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def _check_keys(raw: Dict[str, Any], allowed: Sequence[str], field_path: str) -> None:
    unknown = set(raw.keys()) - set(allowed)
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")


def _section(raw: Any, field_path: str) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    return raw


def parse_script(raw: Any, field_path: str, base_dir: Path) -> Optional[ScriptSpec]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    _check_keys(raw, ("path", "args"), field_path)
    path_str = ensure_str(raw.get("path"), f"{field_path}.path")
    args_raw = raw.get("args", [])
    if args_raw is None:
        args_raw = []
    if isinstance(args_raw, str):
        args = shlex.split(args_raw)
    elif isinstance(args_raw, list):
        args = []
        for arg_idx, arg in enumerate(args_raw):
            if not isinstance(arg, (str, int, float, bool)):
                raise ConfigError(
                    f"Error: {field_path}.args[{arg_idx}] must be scalar value convertible to string."
                )
            args.append(str(arg))
    else:
        raise ConfigError(f"Error: {field_path}.args must be a list or shell-style string.")

    raw_path = Path(path_str)
    resolved = (raw_path if raw_path.is_absolute() else (base_dir / raw_path)).resolve()
    if not resolved.exists() or not resolved.is_file():
        raise ConfigError(f"Error: Script path does not exist for {field_path}.path: {resolved}")
    return ScriptSpec(path=path_str, args=args, resolved_path=resolved)


def parse_config(config_path: Path) -> Settings:
    payload = _load_config_payload(config_path)
    _check_keys(payload, ("version", "timezone", "state_dir", "store", "schedule", "recompute", "display"), "top-level")
    base_dir = config_path.parent.resolve()
    defaults = Settings.default(base_dir)

    version = ensure_int(payload.get("version"), "version", 1, 1)
    if version != 1:
        raise ConfigError(f"Error: Unsupported config version {version}.")

    timezone_name = defaults.timezone_name
    zone = defaults.timezone
    if payload.get("timezone") is not None:
        timezone_name = ensure_str(payload.get("timezone"), "timezone")
        zone = parse_timezone(timezone_name, "timezone")

    state_dir_raw = payload.get("state_dir", DEFAULT_STATE_DIR)
    state_dir = Path(ensure_str(state_dir_raw, "state_dir"))
    if not state_dir.is_absolute():
        state_dir = (base_dir / state_dir).resolve()

    store_raw = _section(payload.get("store"), "store")
    _check_keys(store_raw, ("canonical", "legacy"), "store")
    canonical = ensure_str(store_raw.get("canonical", DEFAULT_CANONICAL_NAMESPACE), "store.canonical")
    legacy_raw = store_raw.get("legacy", list(DEFAULT_LEGACY_NAMESPACES))
    if not isinstance(legacy_raw, list):
        raise ConfigError("Error: store.legacy must be a list of namespace names.")
    legacy = tuple(ensure_str(item, f"store.legacy[{idx}]") for idx, item in enumerate(legacy_raw))

    schedule_raw = _section(payload.get("schedule"), "schedule")
    _check_keys(schedule_raw, ("window_minutes", "fallback_offset_seconds", "job_name"), "schedule")
    window_minutes = ensure_int(
        schedule_raw.get("window_minutes"), "schedule.window_minutes", DEFAULT_WINDOW_MINUTES, 0
    )
    fallback_offset = ensure_int(
        schedule_raw.get("fallback_offset_seconds"),
        "schedule.fallback_offset_seconds",
        DEFAULT_FALLBACK_OFFSET_SECONDS,
        1,
    )
    job_name = ensure_str(schedule_raw.get("job_name", DEFAULT_JOB_NAME), "schedule.job_name")

    recompute_raw = _section(payload.get("recompute"), "recompute")
    _check_keys(recompute_raw, ("script", "deadline_seconds"), "recompute")
    recompute = RecomputeSettings(
        script=parse_script(recompute_raw.get("script"), "recompute.script", base_dir),
        deadline_seconds=ensure_float(
            recompute_raw.get("deadline_seconds"),
            "recompute.deadline_seconds",
            DEFAULT_RECOMPUTE_DEADLINE_SECONDS,
        ),
    )

    display_raw = _section(payload.get("display"), "display")
    _check_keys(display_raw, ("script",), "display")
    display = DisplaySettings(script=parse_script(display_raw.get("script"), "display.script", base_dir))

    return Settings(
        config_path=config_path.resolve(),
        base_dir=base_dir,
        timezone=zone,
        timezone_name=timezone_name,
        state_dir=state_dir,
        store=StoreSettings(canonical=canonical, legacy=legacy),
        schedule=ScheduleSettings(
            window=timedelta(minutes=window_minutes),
            fallback_offset=timedelta(seconds=fallback_offset),
            job_name=job_name,
        ),
        recompute=recompute,
        display=display,
    )


def load_settings(config_path: Path, required: bool = False) -> Settings:
    if not config_path.exists() and not required:
        logger.info("No config at %s; using defaults.", config_path)
        return Settings.default(config_path.parent.resolve())
    return parse_config(config_path)


def build_service(settings: Settings, clock: Optional[Clock] = None) -> ResetService:
    clock = clock or Clock(settings.timezone)
    store = StateStore(settings.state_dir, settings.store.canonical, settings.store.legacy)
    handoff_env = {ENV_STATE_DIR: str(settings.state_dir)}
    if settings.config_path is not None:
        handoff_env[ENV_CONFIG] = str(settings.config_path)
    recompute_script = settings.recompute.script
    display_script = settings.display.script
    return ResetService(
        store=store,
        clock=clock,
        wake_service=LocalWakeService(settings.state_dir / "wake"),
        job_service=LocalJobService(settings.state_dir / "jobs"),
        display=DisplayRefresher(
            display_script.command() if display_script else None,
            working_dir=settings.base_dir,
        ),
        recompute=RecomputeHandoff(
            recompute_script.command() if recompute_script else None,
            deadline_seconds=settings.recompute.deadline_seconds,
            working_dir=settings.base_dir,
            env=handoff_env,
        ),
        window=settings.schedule.window,
        fallback_offset=settings.schedule.fallback_offset,
        job_name=settings.schedule.job_name,
    )


def _launch(target: Callable[..., Any], *args: Any, name: str) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, daemon=True, name=name)
    thread.start()
    return thread


def run_daemon_tick(service: ResetService, watcher: ClockWatcher) -> List[threading.Thread]:
    """One poll of the daemon: fire due wake requests, the due periodic job and clock changes."""
    threads: List[threading.Thread] = []
    now = service.clock.now()

    for request in service.wake_service.due(now):
        if not service.wake_service.consume(request.request_id):
            continue
        logger.info(
            "Wake request %s fired (cause=%s, fallback=%s)",
            request.request_id,
            request.cause.value,
            bool(request.extras.get("fallback")),
        )
        threads.append(_launch(service.trigger_reconciliation, request.cause, name=f"dayturn-wake-{request.request_id}"))

    try:
        job = service.job_service.claim_due(service.job_registrar.name, now)
    except Exception:
        logger.exception("Failed to claim periodic job %s", service.job_registrar.name)
        job = None
    if job is not None:
        threads.append(_launch(service.run_periodic_job, job, name=f"dayturn-job-{job.name}"))

    for cause in watcher.observe():
        threads.append(_launch(service.trigger_reconciliation, cause, name=f"dayturn-{cause.value}"))
    return threads


def command_validate(settings: Settings) -> int:
    print(f"Config valid: {settings.config_path or '(defaults)'}")
    print(f"Timezone: {settings.timezone_name}")
    print(f"State dir: {settings.state_dir}")
    print(f"Namespaces: {settings.store.canonical} (canonical), {', '.join(settings.store.legacy) or '(no legacy)'}")
    print(f"Wake window: {settings.schedule.window}, fallback offset: {settings.schedule.fallback_offset}")
    print(f"Periodic job: {settings.schedule.job_name}")
    recompute = settings.recompute.script
    print(
        f"Recompute: {recompute.path if recompute else '(none)'} "
        f"(deadline={settings.recompute.deadline_seconds}s)"
    )
    display = settings.display.script
    print(f"Display refresh: {display.path if display else '(none)'}")
    return 0


def command_arm(settings: Settings) -> int:
    service = build_service(settings)
    ok = service.arm_schedule()
    diagnostics = service.get_diagnostic_state()
    print(json.dumps({"armed": ok, "last_schedule": diagnostics.get("last_schedule"), "worker": diagnostics.get("worker")}, indent=2))
    return 0 if ok else 1


def command_trigger(settings: Settings, cause: str) -> int:
    resolved = parse_cause(cause)
    record = build_service(settings).trigger_reconciliation(resolved)
    print(json.dumps(record.to_payload() if record else None, indent=2))
    return 0


def command_signal(settings: Settings, raw: str) -> int:
    record = build_service(settings).handle_signal(raw)
    print(json.dumps(record.to_payload() if record else None, indent=2))
    return 0


def command_refresh(settings: Settings) -> int:
    record = build_service(settings).request_immediate_refresh()
    print(json.dumps(record.to_payload() if record else None, indent=2))
    return 0


def command_debug_wake(settings: Settings, seconds: int) -> int:
    request = build_service(settings).schedule_debug_wake(seconds)
    if request is None:
        return 1
    print(f"Debug wake armed for {request.trigger_at.isoformat()}")
    return 0


def command_diagnostics(settings: Settings) -> int:
    print(json.dumps(build_service(settings).get_diagnostic_state(), indent=2, default=str))
    return 0


def command_clear_diagnostics(settings: Settings) -> int:
    removed = build_service(settings).clear_diagnostics()
    print(f"Removed {removed} diagnostic record(s).")
    return 0


def command_set_progress(settings: Settings, percent: float, has_goal: bool, for_day: Optional[str]) -> int:
    issued_for: Optional[date] = None
    if for_day:
        issued_for = _parse_day(for_day)
        if issued_for is None:
            raise DayturnError(f'--for-day must be YYYY-MM-DD, got "{for_day}".')
    saved = build_service(settings).set_daily_progress(percent, has_goal, issued_for=issued_for)
    print(json.dumps({"saved": saved}))
    return 0 if saved else 1


def command_get_progress(settings: Settings) -> int:
    print(json.dumps({"value": build_service(settings).get_daily_progress()}, indent=2))
    return 0


def command_daemon(settings: Settings, poll_seconds: int) -> int:
    service = build_service(settings)
    watcher = ClockWatcher(service.clock)
    watcher.observe()
    logger.info("Starting daemon (state_dir=%s, poll_seconds=%s)", settings.state_dir, poll_seconds)
    service.trigger_reconciliation(TriggerCause.BOOT)
    try:
        while True:
            run_daemon_tick(service, watcher)
            time.sleep(poll_seconds)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="dayturn daily progress reset orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        help=f"Path to dayturn YAML config (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Validate config")
    subparsers.add_parser("arm", help="Arm boundary wake requests and the periodic job")

    trigger_parser = subparsers.add_parser("trigger", help="Run reconciliation for a trigger cause")
    trigger_parser.add_argument(
        "--cause",
        default=TriggerCause.MANUAL_DEBUG.value,
        help=f"Trigger cause (default: {TriggerCause.MANUAL_DEBUG.value})",
    )

    signal_parser = subparsers.add_parser("signal", help="Deliver a raw trigger signal")
    signal_parser.add_argument("name", help="Raw signal name, e.g. boot_completed or user_present")

    subparsers.add_parser("refresh", help="Force an immediate refresh")

    debug_parser = subparsers.add_parser("debug-wake", help="Arm a one-off wake request")
    debug_parser.add_argument("--seconds", type=int, default=30, help="Delay in seconds (default: 30)")

    subparsers.add_parser("diagnostics", help="Print diagnostic state")
    subparsers.add_parser("clear-diagnostics", help="Remove diagnostic records")

    set_parser = subparsers.add_parser("set-progress", help="Persist authoritative daily progress")
    set_parser.add_argument("--percent", type=float, required=True)
    goal_group = set_parser.add_mutually_exclusive_group(required=True)
    goal_group.add_argument("--has-goal", dest="has_goal", action="store_true")
    goal_group.add_argument("--no-goal", dest="has_goal", action="store_false")
    set_parser.add_argument("--for-day", help="Day (YYYY-MM-DD) the value was computed for")

    subparsers.add_parser("get-progress", help="Print stored daily progress")

    daemon_parser = subparsers.add_parser("daemon", help="Run the wake/job host loop")
    daemon_parser.add_argument(
        "--poll-seconds",
        type=int,
        default=DEFAULT_POLL_SECONDS,
        help=f"Polling interval in seconds (default: {DEFAULT_POLL_SECONDS})",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    explicit = args.config or os.getenv(ENV_CONFIG)
    config_path = Path(explicit or DEFAULT_CONFIG).resolve()

    try:
        settings = load_settings(config_path, required=bool(explicit))
        if args.command == "validate":
            return command_validate(settings)
        if args.command == "arm":
            return command_arm(settings)
        if args.command == "trigger":
            return command_trigger(settings, args.cause)
        if args.command == "signal":
            return command_signal(settings, args.name)
        if args.command == "refresh":
            return command_refresh(settings)
        if args.command == "debug-wake":
            if args.seconds <= 0:
                raise DayturnError("--seconds must be >= 1")
            return command_debug_wake(settings, args.seconds)
        if args.command == "diagnostics":
            return command_diagnostics(settings)
        if args.command == "clear-diagnostics":
            return command_clear_diagnostics(settings)
        if args.command == "set-progress":
            return command_set_progress(settings, args.percent, args.has_goal, args.for_day)
        if args.command == "get-progress":
            return command_get_progress(settings)
        if args.command == "daemon":
            if args.poll_seconds <= 0:
                raise DayturnError("--poll-seconds must be >= 1")
            return command_daemon(settings, poll_seconds=args.poll_seconds)
        raise DayturnError(f"Unsupported command: {args.command}")
    except DayturnError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
