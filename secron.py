#!/usr/bin/env python3
"""
secron.py

Seconds-granularity cron rules and a minute-aligned job dispatcher.
"""

from __future__ import annotations

import argparse
import asyncio
import itertools
import logging
import re
import shlex
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Set, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml


LOG_FILE = "secron.log"
DEFAULT_CONFIG = "secron.yaml"
DEFAULT_PREVIEW_COUNT = 5
PREVIEW_HORIZON_MINUTES = 366 * 24 * 60
MIN_DELAY = 0.000001

FIELD_RE = re.compile(r"^(\*(/[0-9]+)?|[0-9,/\-]+)$")
DIGITS_RE = re.compile(r"[0-9]+")
FIELD_DOMAINS: Tuple[Tuple[str, int, int], ...] = (
    ("second", 0, 59),
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 6),
)

Callback = Callable[[], Any]


class SecronError(Exception):
    """Base error for secron."""


class ConfigError(SecronError):
    """Config validation error."""


class InvalidRuleError(SecronError, ValueError):
    """Rule does not match the accepted grammar."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("secron")
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


# ---------------------------------------------------------------------------
# Rule parsing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompiledSchedule:
    second: frozenset
    minute: frozenset
    hour: frozenset
    day: frozenset
    month: frozenset
    weekday: frozenset  # 0 = Sunday

    def matches(self, moment: datetime) -> bool:
        """True when every component of ``moment`` except the second is allowed.

        Day-of-month and weekday must both match.
        """
        return (
            moment.minute in self.minute
            and moment.hour in self.hour
            and moment.day in self.day
            and cron_weekday(moment) in self.weekday
            and moment.month in self.month
        )


def cron_weekday(moment: datetime) -> int:
    return moment.isoweekday() % 7


def split_rule(rule: str) -> List[str]:
    return rule.strip().split()


def validate(rule: Any) -> bool:
    if not isinstance(rule, str):
        return False
    fields = split_rule(rule)
    if len(fields) not in (5, 6):
        return False
    return all(FIELD_RE.match(value) for value in fields)


def compile_rule(rule: str) -> CompiledSchedule:
    if not validate(rule):
        raise InvalidRuleError(f"Invalid cron rule: {rule!r}")
    fields = split_rule(rule)
    if len(fields) == 5:
        fields = ["0", *fields]
    sets = {
        name: frozenset(parse_segment(value, minimum, maximum))
        for value, (name, minimum, maximum) in zip(fields, FIELD_DOMAINS)
    }
    return CompiledSchedule(**sets)


def _as_int(token: str) -> Optional[int]:
    # ASCII only: str.isdigit() also accepts superscripts that int() rejects.
    token = token.strip()
    if not DIGITS_RE.fullmatch(token):
        return None
    return int(token)


def _between(value: Optional[int], minimum: int, maximum: int) -> bool:
    return value is not None and minimum <= value <= maximum


def parse_segment(segment: str, minimum: int, maximum: int, start: Optional[int] = None) -> Set[int]:
    """Resolve one rule field into the integers it selects.

    ``start`` raises the lower bound used for inclusion. It is passed through
    unchanged to recursive calls on list members.
    """
    if start is None or start < minimum:
        start = minimum
    result: Set[int] = set()

    if segment == "*":
        result.update(range(start, maximum + 1))
    elif "," in segment:
        for value in segment.split(","):
            if "/" in value or "-" in segment:
                result |= parse_segment(value, minimum, maximum, start)
                continue
            number = _as_int(value)
            if _between(number, max(minimum, start), maximum):
                result.add(number)
    elif "/" in segment:
        parts = segment.split("/")
        step = _as_int(parts[1])
        if not step:
            return result
        if "-" in parts[0]:
            bounds = parts[0].split("-")
            low, high = _as_int(bounds[0]), _as_int(bounds[1])
            if low is None or high is None:
                return result
            if low > minimum:
                minimum = low
            if high < maximum:
                maximum = high
        if start < minimum:
            start = minimum
        result.update(range(start, maximum + 1, step))
    elif "-" in segment:
        result |= parse_segment(segment + "/1", minimum, maximum, start)
    else:
        number = _as_int(segment)
        if _between(number, max(minimum, start), maximum):
            result.add(number)
    return result


def localize(epoch_seconds: float, tz: Optional[tzinfo] = None) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=tz)


def is_due(rule: str, moment: datetime) -> bool:
    return compile_rule(rule).matches(moment)


def next_fire_times(rule: str, count: int, after: datetime) -> List[datetime]:
    """Upcoming fire instants strictly after ``after``, scanning minute by minute."""
    compiled = compile_rule(rule)
    seconds = sorted(compiled.second)
    runs: List[datetime] = []
    cursor = after.replace(second=0, microsecond=0)
    for _ in range(PREVIEW_HORIZON_MINUTES):
        if compiled.matches(cursor):
            for second in seconds:
                candidate = cursor + timedelta(seconds=second)
                if candidate > after:
                    runs.append(candidate)
                    if len(runs) >= count:
                        return runs
        cursor += timedelta(minutes=1)
    return runs


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------


class Timer(Protocol):
    def schedule_once(self, delay: float, callback: Callback) -> Any:
        ...


class ThreadingTimer:
    """Runs each callback on its own daemon ``threading.Timer``."""

    def schedule_once(self, delay: float, callback: Callback) -> threading.Timer:
        handle = threading.Timer(max(0.0, delay), self._invoke, args=(callback,))
        handle.daemon = True
        handle.start()
        return handle

    @staticmethod
    def _invoke(callback: Callback) -> None:
        try:
            callback()
        except Exception as exc:
            logger.exception("Scheduled callback failed: %s", exc)


class AsyncioTimer:
    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop

    def schedule_once(self, delay: float, callback: Callback) -> asyncio.TimerHandle:
        return self.loop.call_later(max(0.0, delay), callback)


# ---------------------------------------------------------------------------
# Registry and engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Job:
    id: int
    rule: str
    callback: Optional[Callback]
    name: str = ""
    registry: Optional["Registry"] = field(default=None, repr=False, compare=False)

    def destroy(self) -> bool:
        if self.registry is None:
            return False
        return self.registry.remove(self.id)


JobRef = Union[int, Job]

# Shared by every registry so an id never names two jobs in one process.
_job_ids = itertools.count(1)
_id_lock = threading.Lock()


def _next_job_id() -> int:
    with _id_lock:
        return next(_job_ids)


class Registry:
    """Jobs by id. Ids are process-wide, increasing and never handed out twice."""

    def __init__(self) -> None:
        self._jobs: Dict[int, Job] = {}
        self._lock = threading.RLock()

    def create(self, rule: str, callback: Optional[Callback], name: str = "") -> Job:
        with self._lock:
            job = Job(id=_next_job_id(), rule=rule, callback=callback, name=name, registry=self)
            self._jobs[job.id] = job
        return job

    def remove(self, job: JobRef) -> bool:
        job_id = job.id if isinstance(job, Job) else job
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def get_all(self) -> Mapping[int, Job]:
        with self._lock:
            return MappingProxyType(dict(self._jobs))

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


class RecurringTask:
    """Calls ``action`` and then asks the timer for one more run of itself."""

    def __init__(self, timer: Timer, action: Callable[[], Any], next_delay: Callable[[], float]):
        self.timer = timer
        self.action = action
        self.next_delay = next_delay
        self.runs = 0

    def start(self, initial_delay: float = MIN_DELAY) -> None:
        self.timer.schedule_once(initial_delay, self.run)

    def run(self) -> None:
        self.runs += 1
        try:
            self.action()
        finally:
            self.timer.schedule_once(self.next_delay(), self.run)


class ScheduleEngine:
    def __init__(
        self,
        timer: Timer,
        registry: Optional[Registry] = None,
        clock: Callable[[], float] = time.time,
        tz: Optional[tzinfo] = None,
    ):
        self.timer = timer
        self.registry = registry if registry is not None else Registry()
        self.clock = clock
        self.tz = tz
        self._started = False
        self._start_lock = threading.Lock()
        self._last_minute: Optional[int] = None
        self.ticker = RecurringTask(timer, self._safe_tick, self._delay_to_next_minute)

    @property
    def started(self) -> bool:
        return self._started

    def add(self, rule: str, callback: Optional[Callback], name: str = "") -> Job:
        if rule and not validate(rule):
            raise InvalidRuleError(f"Invalid cron rule: {rule!r}")
        job = self.registry.create(rule, callback, name)
        logger.info("Registered job %s (id=%s, rule=%s)", name or "<unnamed>", job.id, rule)
        self.start()
        return job

    def remove(self, job: JobRef) -> bool:
        removed = self.registry.remove(job)
        if removed:
            logger.info("Removed job id=%s", job.id if isinstance(job, Job) else job)
        return removed

    def get_all(self) -> Mapping[int, Job]:
        return self.registry.get_all()

    def start(self) -> None:
        with self._start_lock:
            if self._started:
                return
            self._started = True
        logger.info("Starting schedule engine")
        self.ticker.start(MIN_DELAY)

    def tick(self) -> int:
        now = int(self.clock())
        minute_index = now // 60
        if minute_index == self._last_minute:
            logger.debug("Minute %s already evaluated; skipping tick.", minute_index)
            return 0
        self._last_minute = minute_index
        moment = localize(now, self.tz)

        scheduled = 0
        for job in self.registry.get_all().values():
            if not job.rule or not job.callback:
                continue
            try:
                scheduled += self._dispatch(job, moment)
            except Exception as exc:
                logger.exception("Failed to schedule job id=%s (%s): %s", job.id, job.name, exc)
        logger.debug("Tick at %s scheduled %s callback(s)", moment.isoformat(), scheduled)
        return scheduled

    def _dispatch(self, job: Job, moment: datetime) -> int:
        """Schedule the job's remaining seconds in this minute.

        Seconds already behind ``moment`` are skipped, so a mid-minute start
        never fires a burst of late callbacks.
        """
        compiled = compile_rule(job.rule)
        if not compiled.matches(moment):
            return 0
        scheduled = 0
        for second in sorted(compiled.second):
            if second < moment.second:
                continue
            self.timer.schedule_once(max(MIN_DELAY, second - moment.second), job.callback)
            scheduled += 1
        return scheduled

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception as exc:  # pragma: no cover - defensive
            logger.exception("Tick failed: %s", exc)

    def _delay_to_next_minute(self) -> float:
        return 60 - (self.clock() % 60)


_default_engine: Optional[ScheduleEngine] = None
_default_lock = threading.Lock()


def default_engine() -> ScheduleEngine:
    global _default_engine
    with _default_lock:
        if _default_engine is None:
            _default_engine = ScheduleEngine(ThreadingTimer())
        return _default_engine


def schedule(rule: str, callback: Optional[Callback], name: str = "") -> Job:
    return default_engine().add(rule, callback, name)


def get_all() -> Mapping[int, Job]:
    return default_engine().get_all()


def remove(job: JobRef) -> bool:
    return default_engine().remove(job)


# ---------------------------------------------------------------------------
# Command jobs and config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandJob:
    """A named rule bound to one external command, usable as an engine callback."""

    name: str
    rule: str
    argv: Tuple[str, ...]
    enabled: bool = True
    cwd: Optional[Path] = None

    def __call__(self) -> int:
        logger.info("Firing %s: %s", self.name, shlex.join(self.argv))
        try:
            completed = subprocess.run(list(self.argv), cwd=self.cwd, check=False)
        except OSError as exc:
            logger.error("Job %s could not start: %s", self.name, exc)
            return 127
        level = logging.INFO if completed.returncode == 0 else logging.WARNING
        logger.log(level, "Job %s exited with %s", self.name, completed.returncode)
        return completed.returncode


@dataclass(frozen=True)
class Config:
    timezone: Optional[tzinfo]
    jobs: List[CommandJob]

    def select(self, name: Optional[str] = None, include_disabled: bool = False) -> List[CommandJob]:
        jobs = self.jobs
        if name:
            jobs = [job for job in jobs if job.name == name]
            if not jobs:
                raise SecronError(f"No job named {name!r}.")
        if not include_disabled:
            jobs = [job for job in jobs if job.enabled]
            if not jobs:
                raise SecronError("Nothing to do: every selected job is disabled.")
        return jobs


def load_config(path: Path) -> Config:
    """Read a config of the form ``{timezone: str, jobs: {name: {rule, command, enabled}}}``.

    A missing ``timezone`` means host local time. Relative commands run from
    the config file's directory.
    """
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"{path} must hold a mapping at the top level.")

    extra = set(payload) - {"timezone", "jobs"}
    if extra:
        raise ConfigError(f"Unexpected top-level keys {sorted(extra)} in {path}.")

    jobs_raw = payload.get("jobs")
    if not isinstance(jobs_raw, dict) or not jobs_raw:
        raise ConfigError("jobs must map each job name to its rule and command.")
    jobs = [_command_job(str(name), entry, path.parent) for name, entry in jobs_raw.items()]
    return Config(timezone=_zone(payload.get("timezone")), jobs=jobs)


def _zone(name: Any) -> Optional[tzinfo]:
    if name is None:
        return None
    try:
        return ZoneInfo(str(name))
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown timezone {name!r}.") from exc


def _command_job(name: str, entry: Any, base_dir: Path) -> CommandJob:
    where = f"jobs.{name}"
    if not isinstance(entry, dict):
        raise ConfigError(f"{where} must be a mapping with rule and command.")
    extra = set(entry) - {"rule", "command", "enabled"}
    if extra:
        raise ConfigError(f"{where} has unexpected keys {sorted(extra)}.")

    rule = entry.get("rule")
    if not validate(rule):
        raise ConfigError(f"{where}.rule {rule!r} is not a 5 or 6 field cron rule.")

    command = entry.get("command")
    argv: Tuple[str, ...] = ()
    if isinstance(command, str):
        argv = tuple(shlex.split(command))
    elif isinstance(command, list) and all(isinstance(part, (str, int, float)) for part in command):
        argv = tuple(str(part) for part in command)
    if not argv:
        raise ConfigError(f"{where}.command must be a non-empty string or list.")

    enabled = entry.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigError(f"{where}.enabled must be true or false.")
    return CommandJob(name=name, rule=" ".join(split_rule(rule)), argv=argv, enabled=enabled, cwd=base_dir)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def command_validate(config_path: Path) -> int:
    config = load_config(config_path)
    print(f"{config_path}: {len(config.jobs)} job(s)")
    for job in config.jobs:
        state = "" if job.enabled else "  [disabled]"
        print(f"  {job.name:<20} {job.rule:<24} {shlex.join(job.argv)}{state}")
    return 0


def command_preview(
    config_path: Path,
    job_name: Optional[str],
    count: int,
    now: Optional[datetime] = None,
) -> int:
    config = load_config(config_path)
    start = now.astimezone(config.timezone) if now else datetime.now(tz=config.timezone)
    for job in config.select(job_name, include_disabled=True):
        print(f"{job.name} ({job.rule})")
        runs = next_fire_times(job.rule, count, start)
        if not runs:
            print("  no fire time within a year")
        for run_dt in runs:
            print(f"  {run_dt.isoformat()}")
    return 0


def command_run(config_path: Path, job_name: Optional[str], respect_schedule: bool) -> int:
    config = load_config(config_path)
    now = datetime.now(tz=config.timezone)
    exit_code = 0
    for job in config.select(job_name):
        if respect_schedule and not is_due(job.rule, now):
            logger.info("Skipping %s: rule does not match %s.", job.name, now.strftime("%Y-%m-%d %H:%M"))
            continue
        if job() != 0:
            exit_code = 1
    return exit_code


def command_daemon(config_path: Path, stop_event: Optional[threading.Event] = None) -> int:
    config = load_config(config_path)
    engine = ScheduleEngine(ThreadingTimer(), tz=config.timezone)
    for job in config.select():
        engine.add(job.rule, job, job.name)

    stop_event = stop_event or threading.Event()
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="secron seconds-granularity cron scheduler")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to secron YAML config (default: {DEFAULT_CONFIG})",
    )
    # Sub-command --config only overrides when given.
    config_opts = argparse.ArgumentParser(add_help=False)
    config_opts.add_argument("--config", default=argparse.SUPPRESS, help="Path to config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", parents=[config_opts], help="Check the config and its rules")

    preview_parser = subparsers.add_parser("preview", parents=[config_opts], help="Show upcoming fire times")
    preview_parser.add_argument("--job", help="Preview a single job by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Fire times per job")

    run_parser = subparsers.add_parser("run", parents=[config_opts], help="Fire jobs once, now")
    run_parser.add_argument("--job", help="Fire one job by name")
    run_parser.add_argument(
        "--respect-schedule",
        action="store_true",
        help="Only fire jobs whose rule matches the current minute",
    )

    subparsers.add_parser("daemon", parents=[config_opts], help="Dispatch jobs until interrupted")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            if args.count <= 0:
                raise SecronError("--count must be >= 1")
            return command_preview(config_path, job_name=args.job, count=args.count)
        if args.command == "run":
            return command_run(config_path, job_name=args.job, respect_schedule=args.respect_schedule)
        if args.command == "daemon":
            return command_daemon(config_path)
        raise SecronError(f"Unsupported command: {args.command}")
    except SecronError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
