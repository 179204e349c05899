#!/usr/bin/env python3
"""
cadence.py

Declarative time-matching rules and a threaded, cancellable task scheduler.

A rule maps each date-part (day_of_month, month, weekday, day_of_year,
week_of_year, hour, minute, second) to a list of fields. Fields within a
date-part are OR'ed, date-parts are AND'ed. Hour, minute and second fields
generate the candidate times of day instead of being matched.
"""

from __future__ import annotations

import argparse
import functools
import importlib
import itertools
import logging
import re
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml


DEFAULT_CONFIG = "cadence.yaml"
DEFAULT_PREVIEW_COUNT = 5
DEFAULT_POLL_SECONDS = 1
DEFAULT_HORIZON_DAYS = 732
DEFAULT_SHUTDOWN_TIMEOUT = 5.0
# Longest single Event.wait; threading rejects larger timeouts on some platforms.
MAX_WAIT_SECONDS = threading.TIMEOUT_MAX

DAY_OF_MONTH = "day_of_month"
MONTH = "month"
WEEKDAY = "weekday"
DAY_OF_YEAR = "day_of_year"
WEEK_OF_YEAR = "week_of_year"
HOUR = "hour"
MINUTE = "minute"
SECOND = "second"

DATE_PARTS = (DAY_OF_MONTH, MONTH, WEEKDAY, DAY_OF_YEAR, WEEK_OF_YEAR)
TIME_PARTS = (HOUR, MINUTE, SECOND)
ALL_PARTS = DATE_PARTS + TIME_PARTS

DOMAINS: Dict[str, Tuple[int, int]] = {
    DAY_OF_MONTH: (1, 31),
    MONTH: (1, 12),
    WEEKDAY: (1, 7),
    DAY_OF_YEAR: (1, 366),
    WEEK_OF_YEAR: (1, 53),
    HOUR: (0, 23),
    MINUTE: (0, 59),
    SECOND: (0, 59),
}

# Sunday is 1, matching the weekday date-part.
WEEKDAY_ABBR_TO_NUM = {
    "sun": 1,
    "mon": 2,
    "tue": 3,
    "wed": 4,
    "thu": 5,
    "fri": 6,
    "sat": 7,
}
MONTH_ABBR_TO_NUM = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
DIGITS_RE = re.compile(r"[0-9]+")
RANGE_RE = re.compile(r"(\d+)-(\d+)")
REPETITION_RE = re.compile(r"/(\d+)")
SHIFTED_RE = re.compile(r"(-?\d+)/(\d+)")
TARGET_RE = re.compile(r"^[A-Za-z_][\w.]*:[A-Za-z_][\w.]*$")


class CadenceError(Exception):
    """Base error for cadence."""


class RuleError(CadenceError, ValueError):
    """Invalid field or rule."""


class CronError(RuleError):
    """Malformed cron expression."""


class ConfigError(CadenceError):
    """Config validation error."""


class TriggerError(CadenceError):
    """A scheduled call failed to wait out its delay or to run."""

    def __init__(
        self,
        message: str,
        when: Optional[datetime] = None,
        fn: Optional[Callable[..., Any]] = None,
        call_args: Tuple[Any, ...] = (),
    ) -> None:
        super().__init__(message)
        self.when = when
        self.fn = fn
        self.call_args = tuple(call_args)


def setup_logging(log_file: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger("cadence")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


logger = logging.getLogger("cadence")
UTC = timezone.utc


# --- fields ---


def in_domain(date_part: str, value: int) -> bool:
    low, high = DOMAINS[date_part]
    return low <= value <= high


class Field:
    """One predicate/generator over the values of a single date-part."""

    def valid(self, date_part: str) -> bool:
        raise NotImplementedError

    def matches(self, value: int) -> bool:
        raise NotImplementedError

    def values(self, date_part: str) -> List[int]:
        raise NotImplementedError


@dataclass(frozen=True)
class Exact(Field):
    n: int

    def valid(self, date_part: str) -> bool:
        return in_domain(date_part, self.n)

    def matches(self, value: int) -> bool:
        return value == self.n

    def values(self, date_part: str) -> List[int]:
        return [self.n]

    def __str__(self) -> str:
        return str(self.n)


@dataclass(frozen=True)
class Alternation(Field):
    members: Tuple[int, ...]

    def valid(self, date_part: str) -> bool:
        return all(in_domain(date_part, member) for member in self.members)

    def matches(self, value: int) -> bool:
        return value in self.members

    def values(self, date_part: str) -> List[int]:
        return list(self.members)

    def __str__(self) -> str:
        return ",".join(str(member) for member in self.members)


@dataclass(frozen=True)
class Range(Field):
    """Inclusive when matching dates; generates [start, end) for times of day."""

    start: int
    end: int

    def valid(self, date_part: str) -> bool:
        return in_domain(date_part, self.start) and in_domain(date_part, self.end)

    def matches(self, value: int) -> bool:
        return self.start <= value <= self.end

    def values(self, date_part: str) -> List[int]:
        return list(range(self.start, self.end))

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


@dataclass(frozen=True)
class Star(Field):
    def valid(self, date_part: str) -> bool:
        return True

    def matches(self, value: int) -> bool:
        return True

    def values(self, date_part: str) -> List[int]:
        low, high = DOMAINS[date_part]
        return list(range(low, high + 1))

    def __str__(self) -> str:
        return "*"


@dataclass(frozen=True)
class Repetition(Field):
    rep: int

    def valid(self, date_part: str) -> bool:
        return self.rep > 0 and in_domain(date_part, self.rep)

    def matches(self, value: int) -> bool:
        return value % self.rep == 0

    def values(self, date_part: str) -> List[int]:
        _, high = DOMAINS[date_part]
        return [value for value in range(0, high + 1, self.rep) if in_domain(date_part, value)]

    def __str__(self) -> str:
        return f"/{self.rep}"


@dataclass(frozen=True)
class ShiftedRepetition(Field):
    shift: int
    rep: int

    def valid(self, date_part: str) -> bool:
        return self.rep > 0 and in_domain(date_part, self.shift + self.rep)

    def matches(self, value: int) -> bool:
        return (value - self.shift) % self.rep == 0

    def values(self, date_part: str) -> List[int]:
        _, high = DOMAINS[date_part]
        return [value for value in range(self.shift, high + 1, self.rep) if in_domain(date_part, value)]

    def __str__(self) -> str:
        return f"{self.shift}/{self.rep}"


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def field_exact(value: Any, field_path: str = "field") -> Exact:
    if not _is_int(value):
        raise RuleError(f"Error: exact field must be an integer, got {value!r} at {field_path}.")
    return Exact(value)


def field_alternation(values: Any, field_path: str = "field") -> Alternation:
    if isinstance(values, (str, bytes, Mapping)) or not isinstance(values, Iterable):
        raise RuleError(
            f"Error: alternation field must be a collection of integers, got {values!r} at {field_path}."
        )
    members = list(values)
    if not members:
        raise RuleError(f"Error: alternation field cannot be empty at {field_path}.")
    for member in members:
        if not _is_int(member):
            raise RuleError(
                f"Error: alternation field must contain only integers, got {member!r} at {field_path}."
            )
    return Alternation(tuple(dict.fromkeys(members)))


def field_range(value: Any, field_path: str = "field") -> Range:
    if isinstance(value, Mapping):
        if set(value.keys()) != {"from", "to"}:
            raise RuleError(
                f"Error: range mapping needs exactly 'from' and 'to' keys, got {dict(value)!r} at {field_path}."
            )
        start, end = value["from"], value["to"]
        if not (_is_int(start) and _is_int(end)):
            raise RuleError(f"Error: range bounds must be integers, got {dict(value)!r} at {field_path}.")
    else:
        match = RANGE_RE.fullmatch(value) if isinstance(value, str) else None
        if not match:
            raise RuleError(f'Error: range field must look like "N-M", got {value!r} at {field_path}.')
        start, end = int(match.group(1)), int(match.group(2))
    if start >= end:
        raise RuleError(f'Error: range "{start}-{end}" needs from < to at {field_path}.')
    return Range(start, end)


def field_star(value: Any = "*", field_path: str = "field") -> Star:
    if value != "*":
        raise RuleError(f'Error: star field must be "*", got {value!r} at {field_path}.')
    return Star()


def field_repetition(value: Any, field_path: str = "field") -> Repetition:
    match = REPETITION_RE.fullmatch(value) if isinstance(value, str) else None
    if not match:
        raise RuleError(f'Error: repetition field must look like "/N", got {value!r} at {field_path}.')
    rep = int(match.group(1))
    if rep <= 0:
        raise RuleError(f'Error: repetition "{value}" must be > 0 at {field_path}.')
    return Repetition(rep)


def field_shifted_repetition(value: Any, field_path: str = "field") -> ShiftedRepetition:
    match = SHIFTED_RE.fullmatch(value) if isinstance(value, str) else None
    if not match:
        raise RuleError(
            f'Error: shifted repetition field must look like "S/N", got {value!r} at {field_path}.'
        )
    shift, rep = int(match.group(1)), int(match.group(2))
    if rep <= 0:
        raise RuleError(f'Error: repetition in "{value}" must be > 0 at {field_path}.')
    return ShiftedRepetition(shift, rep)


def parse_field(raw: Any, field_path: str = "field") -> Field:
    if isinstance(raw, Field):
        return raw
    if isinstance(raw, bool):
        raise RuleError(f"Error: illegal field {raw!r} at {field_path}.")
    if isinstance(raw, int):
        return field_exact(raw, field_path)
    if isinstance(raw, Mapping):
        return field_range(raw, field_path)
    if isinstance(raw, (list, tuple, set, frozenset)):
        return field_alternation(raw, field_path)
    if isinstance(raw, str):
        text = raw.strip()
        if text == "*":
            return field_star(text, field_path)
        if RANGE_RE.fullmatch(text):
            return field_range(text, field_path)
        if REPETITION_RE.fullmatch(text):
            return field_repetition(text, field_path)
        if SHIFTED_RE.fullmatch(text):
            return field_shifted_repetition(text, field_path)
    raise RuleError(f"Error: illegal field {raw!r} at {field_path}.")


# --- rules ---


@dataclass(frozen=True)
class Rule:
    """Read-only mapping of date-part to the fields OR'ed for it."""

    parts: Mapping[str, Tuple[Field, ...]]

    def __post_init__(self) -> None:
        object.__setattr__(self, "parts", MappingProxyType(dict(self.parts)))

    def __getitem__(self, date_part: str) -> Tuple[Field, ...]:
        return self.parts[date_part]

    def describe(self) -> str:
        return " ".join(
            f"{part}={'|'.join(str(item) for item in self.parts[part])}" for part in ALL_PARTS
        )


DEFAULT_RULE = Rule(
    parts={
        DAY_OF_MONTH: (Star(),),
        MONTH: (Star(),),
        WEEKDAY: (Star(),),
        DAY_OF_YEAR: (Star(),),
        WEEK_OF_YEAR: (Star(),),
        HOUR: (Exact(0),),
        MINUTE: (Exact(0),),
        SECOND: (Exact(0),),
    }
)


def normalize_date_part(key: Any, field_path: str) -> str:
    if not isinstance(key, str):
        raise RuleError(f"Error: date-part names must be strings, got {key!r} at {field_path}.")
    part = key.strip().lower().replace("-", "_")
    if part not in DOMAINS:
        raise RuleError(f'Error: Unknown date-part "{key}" at {field_path}; expected one of {list(ALL_PARTS)}.')
    return part


def rule(partial: Optional[Mapping[str, Any]] = None, field_path: str = "rule") -> Rule:
    """Build a rule from loose input, defaulting to every day at 00:00:00."""
    if partial is None:
        return DEFAULT_RULE
    if not isinstance(partial, Mapping):
        raise RuleError(f"Error: {field_path} must be a mapping of date-part to fields.")

    supplied: Dict[str, Any] = {}
    for key, value in partial.items():
        part = normalize_date_part(key, field_path)
        if part in supplied:
            raise RuleError(f'Error: date-part "{part}" given more than once at {field_path}.')
        supplied[part] = value

    parts: Dict[str, Tuple[Field, ...]] = {}
    for part in ALL_PARTS:
        if part not in supplied:
            parts[part] = DEFAULT_RULE[part]
            continue
        raw_items = supplied[part]
        items = list(raw_items) if isinstance(raw_items, list) else [raw_items]
        if not items:
            raise RuleError(f"Error: {field_path}.{part} cannot be empty.")
        fields: List[Field] = []
        for idx, raw in enumerate(items):
            item_path = f"{field_path}.{part}[{idx}]"
            parsed = parse_field(raw, item_path)
            if not parsed.valid(part):
                low, high = DOMAINS[part]
                raise RuleError(
                    f'Error: "{parsed}" is an invalid field for {part} (domain {low}-{high}) at {item_path}.'
                )
            fields.append(parsed)
        parts[part] = tuple(fields)
    return Rule(parts=parts)


def coerce_rule(value: Any, field_path: str = "rule") -> Rule:
    if value is None:
        return DEFAULT_RULE
    if isinstance(value, Rule):
        return value
    if isinstance(value, str):
        return cron(value)
    return rule(value, field_path)


# --- cron ---


def replace_named_tokens(raw: str, mapping: Dict[str, int], field_path: str) -> str:
    def repl(match: re.Match[str]) -> str:
        token = match.group(0).lower()
        if token not in mapping:
            raise CronError(f'Error: Invalid token "{token}" at {field_path}.')
        return str(mapping[token])

    return re.sub(r"[A-Za-z]+", repl, raw)


def translate_cron_field(
    token: str,
    date_part: str,
    names: Optional[Dict[str, int]] = None,
) -> List[Any]:
    field_path = f"cron.{date_part}"
    raw = token.strip().lower()
    if names:
        raw = replace_named_tokens(raw, names, field_path)
    pieces = raw.split(",")
    if any(not piece for piece in pieces):
        raise CronError(f'Error: Invalid cron token "{token}" at {field_path}.')
    if len(pieces) > 1 and all(DIGITS_RE.fullmatch(piece) for piece in pieces):
        return [[int(piece) for piece in pieces]]

    specifiers: List[Any] = []
    for piece in pieces:
        if DIGITS_RE.fullmatch(piece):
            specifiers.append(int(piece))
        elif piece.startswith("*/"):
            specifiers.append(piece[1:])
        else:
            specifiers.append(piece)
    return specifiers


def parse_cron(expr: str) -> Dict[str, List[Any]]:
    """Translate "minute hour day_of_month month weekday" into rule input."""
    if not isinstance(expr, str):
        raise CronError(f"Error: cron expression must be a string, got {expr!r}.")
    tokens = expr.split()
    if len(tokens) != 5:
        raise CronError(
            f'Error: cron expression needs exactly 5 fields (minute hour day_of_month month weekday), '
            f'got {len(tokens)} in "{expr}".'
        )
    minute, hour, day_of_month, month, weekday = tokens
    return {
        MINUTE: translate_cron_field(minute, MINUTE),
        HOUR: translate_cron_field(hour, HOUR),
        DAY_OF_MONTH: translate_cron_field(day_of_month, DAY_OF_MONTH),
        MONTH: translate_cron_field(month, MONTH, MONTH_ABBR_TO_NUM),
        WEEKDAY: translate_cron_field(weekday, WEEKDAY, WEEKDAY_ABBR_TO_NUM),
    }


def cron(expr: str) -> Rule:
    try:
        return rule(parse_cron(expr), field_path="cron")
    except CronError:
        raise
    except RuleError as exc:
        raise CronError(f'{exc} (cron "{expr}")') from exc


# --- simulation ---


def weekday_number(day: date) -> int:
    return day.isoweekday() % 7 + 1


def date_part_value(day: date, date_part: str) -> int:
    if date_part == DAY_OF_MONTH:
        return day.day
    if date_part == MONTH:
        return day.month
    if date_part == WEEKDAY:
        return weekday_number(day)
    if date_part == DAY_OF_YEAR:
        return day.timetuple().tm_yday
    if date_part == WEEK_OF_YEAR:
        return day.isocalendar()[1]
    raise ValueError(f"{date_part} is not a calendar date-part")


def date_matches(rule: Rule, day: date) -> bool:
    return all(
        any(item.matches(date_part_value(day, part)) for item in rule[part])
        for part in DATE_PARTS
    )


def time_candidates(rule: Rule, date_part: str) -> List[int]:
    return sorted(set(itertools.chain.from_iterable(item.values(date_part) for item in rule[date_part])))


def local_timezone() -> tzinfo:
    local = datetime.now().astimezone().tzinfo
    return local if local is not None else UTC


def _is_nonexistent_local(local_dt: datetime, tz: ZoneInfo) -> bool:
    naive = local_dt.replace(tzinfo=None)
    assumed = naive.replace(tzinfo=tz, fold=0)
    roundtrip = assumed.astimezone(UTC).astimezone(tz).replace(tzinfo=None)
    return roundtrip != naive


def _resolve_now(now: Optional[datetime], tz: Optional[tzinfo]) -> datetime:
    if now is None:
        return datetime.now(tz=tz or local_timezone())
    if now.tzinfo is None:
        return now.replace(tzinfo=tz or local_timezone())
    return now.astimezone(tz) if tz is not None else now


def iter_runs(
    rule: Rule,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
) -> Iterator[datetime]:
    """Lazily yield every run strictly after ``now`` within the horizon, ascending."""
    current = _resolve_now(now, tz)
    zone = current.tzinfo
    hours = time_candidates(rule, HOUR)
    minutes = time_candidates(rule, MINUTE)
    seconds = time_candidates(rule, SECOND)
    if not (hours and minutes and seconds):
        return

    # Same-zone datetimes compare by wall clock and ignore fold, so compare in UTC.
    current_utc = current.astimezone(UTC)
    start_day = current.date()
    for offset in range(horizon_days):
        day = start_day + timedelta(days=offset)
        if not date_matches(rule, day):
            continue
        for hour, minute, second in itertools.product(hours, minutes, seconds):
            candidate = datetime(day.year, day.month, day.day, hour, minute, second, tzinfo=zone)
            if candidate.astimezone(UTC) <= current_utc:
                continue
            if isinstance(zone, ZoneInfo) and _is_nonexistent_local(candidate, zone):
                continue
            yield candidate


def simulate(
    rule: Rule,
    n: int,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
) -> List[datetime]:
    """Return up to ``n`` upcoming runs; fewer when the rule is sparse within the horizon."""
    if n <= 0:
        return []
    return list(itertools.islice(iter_runs(rule, now=now, tz=tz, horizon_days=horizon_days), n))


def next_run_after(rule: Rule, after: datetime, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    return next(iter_runs(rule, now=after, tz=tz), None)


# --- triggers ---


class Outcome(Enum):
    PROCEED = "proceed"
    CANCEL = "cancel"
    REDIRECT = "redirect"


class Decision:
    """Single-assignment cell. The first commit wins; later commits are ignored."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._committed = threading.Event()
        self._outcome: Optional[Outcome] = None
        self._callback: Optional[Callable[..., Any]] = None

    def commit(self, outcome: Outcome, callback: Optional[Callable[..., Any]] = None) -> bool:
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
            self._callback = callback
        self._committed.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._committed.wait(timeout)

    @property
    def committed(self) -> bool:
        return self._committed.is_set()

    @property
    def outcome(self) -> Optional[Outcome]:
        return self._outcome

    @property
    def callback(self) -> Optional[Callable[..., Any]]:
        return self._callback


def describe_callable(fn: Any) -> str:
    name = getattr(fn, "__qualname__", None) or getattr(fn, "__name__", None)
    if name is None:
        return repr(fn)
    module = getattr(fn, "__module__", None)
    return f"{module}.{name}" if module else name


def seconds_until(when: datetime) -> float:
    if when.tzinfo is None:
        return max((when - datetime.now()).total_seconds(), 0.0)
    return max((when.astimezone(UTC) - datetime.now(tz=UTC)).total_seconds(), 0.0)


class Trigger:
    """
    One-shot countdown to ``when`` that runs exactly one of ``fn(*args)``,
    nothing, or a redirect callback with the same arguments.
    """

    def __init__(
        self,
        when: datetime,
        fn: Callable[..., Any],
        args: Iterable[Any] = (),
        on_error: Optional[Callable[[TriggerError], Any]] = None,
        name: Optional[str] = None,
    ) -> None:
        self.when = when
        self.fn = fn
        self.args = tuple(args)
        self.on_error = on_error
        self.name = name or getattr(fn, "__name__", "trigger")
        self._decision = Decision()
        self._started = False
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"cadence-trigger-{self.name}",
        )

    def start(self) -> "Trigger":
        self._started = True
        self._thread.start()
        return self

    def cancel(self) -> bool:
        return self._decision.commit(Outcome.CANCEL)

    def redirect(self, callback: Callable[..., Any]) -> bool:
        return self._decision.commit(Outcome.REDIRECT, callback)

    @property
    def outcome(self) -> Optional[Outcome]:
        return self._decision.outcome

    @property
    def fired(self) -> bool:
        return self._decision.outcome is Outcome.PROCEED

    def join(self, timeout: Optional[float] = None) -> None:
        if self._started:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        try:
            if not self._wait_until_due():
                self._decision.commit(Outcome.PROCEED)
        except Exception as exc:
            if self._decision.commit(Outcome.CANCEL):
                self._report(exc, self.fn, "waiting for")
                return

        outcome = self._decision.outcome
        if outcome is Outcome.PROCEED:
            target = self.fn
        elif outcome is Outcome.REDIRECT:
            target = self._decision.callback
        else:
            logger.debug("Trigger %s cancelled before %s", self.name, self.when)
            return
        try:
            target(*self.args)
        except Exception as exc:
            self._report(exc, target, "running")

    def _wait_until_due(self) -> bool:
        """Wait in bounded chunks until ``when``; True if a decision came first."""
        while True:
            remaining = seconds_until(self.when)
            if remaining <= 0:
                return self._decision.committed
            if self._decision.wait(min(remaining, MAX_WAIT_SECONDS)):
                return True

    def _report(self, exc: Exception, target: Any, stage: str) -> None:
        when_text = self.when.isoformat() if isinstance(self.when, datetime) else repr(self.when)
        error = TriggerError(
            f"Error: trigger {self.name} failed while {stage} {describe_callable(target)} "
            f"(when={when_text}, args={self.args!r}): {exc}",
            when=self.when,
            fn=target,
            call_args=self.args,
        )
        error.__cause__ = exc
        if self.on_error is None:
            logger.error("%s", error, exc_info=exc)
            return
        try:
            self.on_error(error)
        except Exception:
            logger.exception("Error sink for trigger %s failed; original error: %s", self.name, error)


def at(
    when: datetime,
    fn: Callable[..., Any],
    *args: Any,
    on_error: Optional[Callable[[TriggerError], Any]] = None,
) -> Trigger:
    return Trigger(when, fn, args, on_error=on_error).start()


# --- scheduler ---


class RunMode(str, Enum):
    CHAIN = "chain"
    ITERATIVE = "iterative"


class Status(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


def _noop(*_args: Any) -> None:
    return None


def _as_args(result: Any) -> Tuple[Any, ...]:
    return result if isinstance(result, tuple) else (result,)


@dataclass(frozen=True)
class TaskSnapshot:
    name: str
    status: str
    mode: str
    rule: str
    function: str
    next_run: Optional[datetime]
    last_run_at: Optional[datetime]
    last_error: Optional[str]
    runs: int
    errors: int
    stopping: bool
    pending_args: Tuple[Any, ...]


@dataclass
class ScheduleEntry:
    name: str
    rule: Rule
    fn: Callable[..., Any]
    mode: RunMode = RunMode.CHAIN
    status: Status = Status.IDLE
    trigger: Optional[Trigger] = None
    # Keyed by the trigger each stop was issued against; a chain settles only its own callback.
    stop_callbacks: Dict[Trigger, Callable[..., Any]] = field(default_factory=dict)
    next_run: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    runs: int = 0
    errors: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot(
            name=self.name,
            status=self.status.value,
            mode=self.mode.value,
            rule=self.rule.describe(),
            function=describe_callable(self.fn),
            next_run=self.next_run,
            last_run_at=self.last_run_at,
            last_error=self.last_error,
            runs=self.runs,
            errors=self.errors,
            stopping=bool(self.stop_callbacks),
            pending_args=self.trigger.args if self.trigger is not None else (),
        )


Planner = Callable[[Rule, datetime], Optional[datetime]]


class Scheduler:
    """
    Registry of named tasks. Each running task owns at most one armed
    trigger; a firing trigger runs the task and arms the next one.
    """

    def __init__(
        self,
        tz: Optional[tzinfo] = None,
        planner: Optional[Planner] = None,
        error_sink: Optional[Callable[[TriggerError], Any]] = None,
    ) -> None:
        self.tz = tz or local_timezone()
        self._planner: Planner = planner or next_run_after
        self._error_sink = error_sink
        self._entries: Dict[str, ScheduleEntry] = {}
        self._lock = threading.Lock()

    def _entry(self, name: str) -> Optional[ScheduleEntry]:
        with self._lock:
            return self._entries.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def add(self, name: str, rule: Any, fn: Callable[..., Any]) -> bool:
        parsed = coerce_rule(rule, f"{name}.rule")
        if not callable(fn):
            raise TypeError(f"task {name} needs a callable, got {fn!r}")
        with self._lock:
            if name in self._entries:
                logger.info("Task %s already registered; add ignored.", name)
                return False
            self._entries[name] = ScheduleEntry(name=name, rule=parsed, fn=fn)
        logger.info("Added task %s (%s)", name, parsed.describe())
        return True

    def remove(self, name: str) -> bool:
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                return False
            with entry.lock:
                if entry.status is Status.RUNNING:
                    logger.warning("Task %s is running; stop it before removing.", name)
                    return False
                del self._entries[name]
        logger.info("Removed task %s", name)
        return True

    def update_rule(self, name: str, rule: Any) -> bool:
        """Replace the rule; a running chain picks it up when computing the run after next."""
        entry = self._entry(name)
        if entry is None:
            return False
        parsed = coerce_rule(rule, f"{name}.rule")
        with entry.lock:
            entry.rule = parsed
        logger.info("Updated rule for task %s (%s)", name, parsed.describe())
        return True

    def update_fn(self, name: str, fn: Callable[..., Any]) -> bool:
        entry = self._entry(name)
        if entry is None:
            return False
        if not callable(fn):
            raise TypeError(f"task {name} needs a callable, got {fn!r}")
        with entry.lock:
            entry.fn = fn
        logger.info("Updated function for task %s (%s)", name, describe_callable(fn))
        return True

    def start(self, name: str, *args: Any) -> bool:
        return self._start(name, RunMode.CHAIN, args)

    def start_iterative(self, name: str, *args: Any) -> bool:
        """Start a chain where each call's return value becomes the next call's arguments."""
        return self._start(name, RunMode.ITERATIVE, args)

    def stop(self, name: Optional[str] = None, cb: Optional[Callable[..., Any]] = None) -> int:
        """
        Stop one task, or every task when ``name`` is None. ``cb`` runs once per
        stopped task with the arguments its next run would have received.
        Returns the number of tasks that were running.
        """
        names = [name] if name is not None else self.names()
        return sum(1 for task_name in names if self._stop(task_name, cb))

    def restart(self, name: str, *args: Any) -> bool:
        entry = self._entry(name)
        if entry is None:
            return False
        with entry.lock:
            mode = entry.mode

        def resume(*pending: Any) -> None:
            self._start(name, mode, args if args else pending)

        if self._stop(name, resume):
            return True
        return self._start(name, mode, args)

    def status(self, name: str) -> Optional[str]:
        entry = self._entry(name)
        if entry is None:
            return None
        with entry.lock:
            return entry.status.value

    def inspect(self, name: Optional[str] = None) -> Any:
        if name is not None:
            entry = self._entry(name)
            if entry is None:
                return None
            with entry.lock:
                return entry.snapshot()
        with self._lock:
            entries = list(self._entries.values())
        snapshots: Dict[str, TaskSnapshot] = {}
        for entry in entries:
            with entry.lock:
                snapshots[entry.name] = entry.snapshot()
        return snapshots

    def shutdown(
        self,
        cb: Optional[Callable[..., Any]] = None,
        timeout: Optional[float] = DEFAULT_SHUTDOWN_TIMEOUT,
    ) -> int:
        with self._lock:
            entries = list(self._entries.values())
        triggers: List[Trigger] = []
        for entry in entries:
            with entry.lock:
                if entry.trigger is not None:
                    triggers.append(entry.trigger)
        stopped = self.stop(cb=cb)
        for trigger in triggers:
            trigger.join(timeout)
        logger.info("Scheduler shut down (%s task(s) stopped).", stopped)
        return stopped

    def _start(self, name: str, mode: RunMode, args: Tuple[Any, ...]) -> bool:
        entry = self._entry(name)
        if entry is None:
            logger.warning("Cannot start unknown task %s", name)
            return False
        with entry.lock:
            if entry.status is Status.RUNNING:
                return False
            entry.mode = mode
            entry.status = Status.RUNNING
            error = self._arm(entry, tuple(args))
            armed = entry.status is Status.RUNNING
        if error is not None:
            self._report(error)
        return armed

    def _stop(self, name: str, cb: Optional[Callable[..., Any]]) -> bool:
        entry = self._entry(name)
        if entry is None:
            return False
        with entry.lock:
            trigger = entry.trigger
            if entry.status is not Status.RUNNING or trigger is None:
                return False
            entry.status = Status.IDLE
            entry.next_run = None
            entry.stop_callbacks[trigger] = cb or _noop
            # Loses to a trigger that already fired; the re-arm step then settles the stop.
            trigger.redirect(functools.partial(self._settle, entry, trigger))
        logger.info("Stopping task %s", name)
        return True

    def _arm(
        self,
        entry: ScheduleEntry,
        args: Tuple[Any, ...],
        after: Optional[datetime] = None,
    ) -> Optional[TriggerError]:
        # Caller holds entry.lock. Planning never starts before the instant that just fired.
        now = datetime.now(tz=self.tz)
        try:
            if after is not None and after.astimezone(UTC) > now.astimezone(UTC):
                now = after
            next_run = self._planner(entry.rule, now)
        except Exception as exc:
            error = TriggerError(
                f"Error: unable to compute next run for task {entry.name}: {exc}",
                fn=entry.fn,
                call_args=args,
            )
            error.__cause__ = exc
            self._halt(entry, error)
            return error
        if next_run is None:
            error = TriggerError(
                f"Error: task {entry.name} has no run within the lookahead window ({entry.rule.describe()}).",
                fn=entry.fn,
                call_args=args,
            )
            self._halt(entry, error)
            return error

        def fire(*call_args: Any) -> None:
            self._fire(entry, trigger, call_args)

        def failed(error: TriggerError) -> None:
            self._trigger_failed(entry, trigger, error)

        trigger = Trigger(next_run, fire, args, on_error=failed, name=entry.name)
        try:
            trigger.start()
        except RuntimeError as exc:
            error = TriggerError(
                f"Error: unable to start trigger for task {entry.name}: {exc}",
                when=next_run,
                fn=entry.fn,
                call_args=args,
            )
            error.__cause__ = exc
            self._halt(entry, error)
            return error
        # The new thread cannot reach _fire before entry.lock is released.
        entry.trigger = trigger
        entry.next_run = next_run
        logger.info("Task %s armed for %s", entry.name, next_run.isoformat())
        return None

    def _fire(self, entry: ScheduleEntry, trigger: Trigger, args: Tuple[Any, ...]) -> None:
        with entry.lock:
            fn = entry.fn
            mode = entry.mode
            entry.last_run_at = datetime.now(tz=self.tz)
            entry.runs += 1
        logger.info("Running task %s", entry.name)

        next_args = args
        failure: Optional[TriggerError] = None
        try:
            result = fn(*args)
        except Exception as exc:
            failure = TriggerError(
                f"Error: task {entry.name} raised {exc!r} (when={trigger.when.isoformat()}, args={args!r})",
                when=trigger.when,
                fn=fn,
                call_args=args,
            )
            failure.__cause__ = exc
        else:
            if mode is RunMode.ITERATIVE:
                next_args = _as_args(result)

        callback = None
        with entry.lock:
            if failure is not None:
                self._note_error(entry, failure)
            if entry.status is Status.RUNNING and entry.trigger is trigger:
                rearm_error = self._arm(entry, next_args, after=trigger.when)
            else:
                rearm_error = None
                callback = self._take_stop_callback(entry, trigger)
        if failure is not None:
            self._report(failure)
        if rearm_error is not None:
            self._report(rearm_error)
        self._run_stop_callback(entry, callback, next_args)

    def _settle(self, entry: ScheduleEntry, trigger: Trigger, *args: Any) -> None:
        with entry.lock:
            callback = self._take_stop_callback(entry, trigger)
        self._run_stop_callback(entry, callback, args)

    def _trigger_failed(self, entry: ScheduleEntry, trigger: Trigger, error: TriggerError) -> None:
        with entry.lock:
            if entry.trigger is trigger:
                self._halt(entry, error)
            else:
                self._note_error(entry, error)
            callback = entry.stop_callbacks.pop(trigger, None)
        self._report(error)
        self._run_stop_callback(entry, callback, error.call_args)

    def _take_stop_callback(self, entry: ScheduleEntry, trigger: Trigger) -> Optional[Callable[..., Any]]:
        # Caller holds entry.lock.
        if entry.trigger is trigger:
            entry.trigger = None
            entry.next_run = None
        return entry.stop_callbacks.pop(trigger, None)

    def _run_stop_callback(
        self,
        entry: ScheduleEntry,
        callback: Optional[Callable[..., Any]],
        args: Tuple[Any, ...],
    ) -> None:
        if callback is None:
            return
        logger.info("Task %s stopped; running stop callback", entry.name)
        try:
            callback(*args)
        except Exception as exc:
            error = TriggerError(
                f"Error: stop callback for task {entry.name} raised {exc!r} (args={args!r})",
                fn=callback,
                call_args=args,
            )
            error.__cause__ = exc
            with entry.lock:
                self._note_error(entry, error)
            self._report(error)

    def _halt(self, entry: ScheduleEntry, error: TriggerError) -> None:
        entry.status = Status.IDLE
        entry.trigger = None
        entry.next_run = None
        self._note_error(entry, error)

    def _note_error(self, entry: ScheduleEntry, error: TriggerError) -> None:
        entry.last_error = str(error)
        entry.errors += 1

    def _report(self, error: TriggerError) -> None:
        logger.error("%s", error, exc_info=error.__cause__)
        if self._error_sink is None:
            return
        try:
            self._error_sink(error)
        except Exception:
            logger.exception("Error sink failed while reporting: %s", error)


# --- config ---


@dataclass(frozen=True)
class TaskSpec:
    name: str
    enabled: bool
    rule: Rule
    source: str
    target: str
    fn: Callable[..., Any]
    args: Tuple[Any, ...]
    mode: RunMode


@dataclass(frozen=True)
class CadenceConfig:
    timezone: tzinfo
    timezone_name: str
    tasks: List[TaskSpec]


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def parse_mode(value: Any, field_path: str, default: RunMode) -> RunMode:
    if value is None:
        return default
    mode = ensure_str(value, field_path).lower()
    try:
        return RunMode(mode)
    except ValueError:
        raise ConfigError(
            f'Error: {field_path} must be one of {[m.value for m in RunMode]}, got "{mode}".'
        ) from None


def resolve_target(value: Any, field_path: str) -> Callable[..., Any]:
    target = ensure_str(value, field_path)
    if not TARGET_RE.match(target):
        raise ConfigError(f'Error: {field_path} must look like "package.module:function", got "{target}".')
    module_name, attr_path = target.split(":", 1)
    try:
        obj: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f'Error: Cannot import module "{module_name}" at {field_path}: {exc}') from exc
    for attr in attr_path.split("."):
        try:
            obj = getattr(obj, attr)
        except AttributeError as exc:
            raise ConfigError(f'Error: "{target}" has no attribute "{attr}" at {field_path}.') from exc
    if not callable(obj):
        raise ConfigError(f'Error: "{target}" is not callable at {field_path}.')
    return obj


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_task(raw: Any, path: str, default_mode: RunMode) -> TaskSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {path} must be a mapping.")
    unknown = set(raw.keys()) - {"name", "enabled", "rule", "cron", "target", "args", "mode"}
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {path}: {sorted(unknown)}.")

    name = ensure_str(raw.get("name"), f"{path}.name")
    enabled = ensure_bool(raw.get("enabled"), f"{path}.enabled", True)

    has_rule = "rule" in raw
    has_cron = "cron" in raw
    if has_rule == has_cron:
        raise ConfigError(f'Error: {path} needs exactly one of "rule" or "cron".')
    try:
        if has_cron:
            source = ensure_str(raw["cron"], f"{path}.cron")
            parsed = cron(source)
            source = f"cron: {source}"
        else:
            rule_raw = raw["rule"]
            if rule_raw is not None and not isinstance(rule_raw, dict):
                raise ConfigError(f"Error: {path}.rule must be a mapping of date-part to fields.")
            parsed = rule(rule_raw, field_path=f"{path}.rule")
            source = f"rule: {parsed.describe()}"
    except RuleError as exc:
        raise ConfigError(str(exc)) from exc

    target = ensure_str(raw.get("target"), f"{path}.target")
    fn = resolve_target(target, f"{path}.target")

    args_raw = raw.get("args", [])
    if args_raw is None:
        args_raw = []
    if not isinstance(args_raw, list):
        raise ConfigError(f"Error: {path}.args must be a list.")

    mode = parse_mode(raw.get("mode"), f"{path}.mode", default_mode)
    return TaskSpec(
        name=name,
        enabled=enabled,
        rule=parsed,
        source=source,
        target=target,
        fn=fn,
        args=tuple(args_raw),
        mode=mode,
    )


def parse_config(config_path: Path) -> CadenceConfig:
    payload = _load_config_payload(config_path)

    unknown_top = set(payload.keys()) - {"version", "defaults", "tasks"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    defaults = payload.get("defaults", {}) or {}
    if not isinstance(defaults, dict):
        raise ConfigError("Error: defaults must be a mapping.")
    unknown_defaults = set(defaults.keys()) - {"timezone", "mode"}
    if unknown_defaults:
        raise ConfigError(f"Error: Unknown keys in defaults: {sorted(unknown_defaults)}.")

    timezone_name = defaults.get("timezone")
    if timezone_name is None:
        zone = local_timezone()
        timezone_name = str(zone)
    else:
        if not isinstance(timezone_name, str):
            raise ConfigError("Error: defaults.timezone must be a timezone string.")
        zone = parse_timezone(timezone_name, "defaults.timezone")
    default_mode = parse_mode(defaults.get("mode"), "defaults.mode", RunMode.CHAIN)

    tasks_raw = payload.get("tasks")
    if not isinstance(tasks_raw, list) or not tasks_raw:
        raise ConfigError("Error: tasks must be a non-empty list.")

    seen_names = set()
    tasks: List[TaskSpec] = []
    for idx, task_raw in enumerate(tasks_raw):
        task = parse_task(task_raw, f"tasks[{idx}]", default_mode)
        if task.name in seen_names:
            raise ConfigError(f'Error: Duplicate task name "{task.name}".')
        seen_names.add(task.name)
        tasks.append(task)

    return CadenceConfig(timezone=zone, timezone_name=timezone_name, tasks=tasks)


def build_scheduler(config: CadenceConfig, **kwargs: Any) -> Scheduler:
    scheduler = Scheduler(tz=config.timezone, **kwargs)
    for task in config.tasks:
        scheduler.add(task.name, task.rule, task.fn)
    return scheduler


def start_task(scheduler: Scheduler, task: TaskSpec) -> bool:
    if task.mode is RunMode.ITERATIVE:
        return scheduler.start_iterative(task.name, *task.args)
    return scheduler.start(task.name, *task.args)


def filter_tasks(tasks: List[TaskSpec], task_name: Optional[str], include_disabled: bool = False) -> List[TaskSpec]:
    selected = tasks
    if task_name:
        selected = [task for task in selected if task.name == task_name]
        if not selected:
            raise CadenceError(f'Unknown task "{task_name}".')
    if include_disabled:
        return selected
    selected = [task for task in selected if task.enabled]
    if not selected:
        raise CadenceError("No enabled tasks selected.")
    return selected


# --- commands ---


def print_runs(runs: List[datetime], count: int) -> None:
    print(f"Next {count} run(s):")
    if not runs:
        print("- none")
    for run_dt in runs:
        print(f"- {run_dt.isoformat()}")


def command_validate(config_path: Path) -> int:
    config = parse_config(config_path)
    enabled_count = sum(1 for task in config.tasks if task.enabled)
    print(f"Config valid: {config_path}")
    print(f"Timezone: {config.timezone_name}")
    print(f"Total tasks: {len(config.tasks)}")
    print(f"Enabled tasks: {enabled_count}")
    for task in config.tasks:
        print(f"- {task.name}: {task.mode.value} -> {task.target} ({task.source})")
    return 0


def command_preview(config_path: Path, task_name: Optional[str], count: int) -> int:
    config = parse_config(config_path)
    selected = filter_tasks(config.tasks, task_name, include_disabled=True)
    now = datetime.now(tz=config.timezone)

    for task in selected:
        print("=" * 80)
        print(f"Task: {task.name} (enabled={task.enabled}, mode={task.mode.value})")
        print(f"Target: {task.target}")
        print(f"Schedule: {task.source}")
        print(f"Rule: {task.rule.describe()}")
        print_runs(simulate(task.rule, count, now=now, tz=config.timezone), count)
    print("=" * 80)
    return 0


def command_cron(expr: str, count: int) -> int:
    parsed = cron(expr)
    print(f"Cron: {expr}")
    print(f"Rule: {parsed.describe()}")
    print_runs(simulate(parsed, count), count)
    return 0


def command_run(config_path: Path, task_name: Optional[str]) -> int:
    config = parse_config(config_path)
    selected = filter_tasks(config.tasks, task_name, include_disabled=False)

    exit_code = 0
    for task in selected:
        started = time.monotonic()
        logger.info("Running task %s once (%s)", task.name, task.target)
        try:
            result = task.fn(*task.args)
        except Exception:
            logger.exception("Task %s failed", task.name)
            exit_code = 1
            continue
        logger.info(
            "Task %s completed in %.2fs (result=%r)",
            task.name,
            time.monotonic() - started,
            result,
        )
    return exit_code


def _log_pending(name: str, *args: Any) -> None:
    logger.info("Task %s stopped before its next run (pending args=%r)", name, args)


def command_daemon(config_path: Path, poll_seconds: int) -> int:
    config = parse_config(config_path)
    selected = filter_tasks(config.tasks, task_name=None, include_disabled=False)
    scheduler = build_scheduler(config)

    logger.info(
        "Starting daemon with %s enabled task(s), timezone=%s",
        len(selected),
        config.timezone_name,
    )
    for task in selected:
        start_task(scheduler, task)

    try:
        while any(scheduler.status(task.name) == Status.RUNNING.value for task in selected):
            time.sleep(poll_seconds)
        failed = [task.name for task in selected if scheduler.inspect(task.name).last_error]
        if failed:
            logger.error("Daemon exiting: no task left running (errors in %s).", ", ".join(failed))
            return 1
        logger.info("Daemon exiting: no task left running.")
        return 0
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    finally:
        for task in selected:
            scheduler.stop(task.name, functools.partial(_log_pending, task.name))
        scheduler.shutdown()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="cadence rule-based task scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to cadence YAML config (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate config and rules")
    validate_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")

    preview_parser = subparsers.add_parser("preview", help="Show the next simulated runs")
    preview_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
    preview_parser.add_argument("--task", help="Preview a single task by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    run_parser = subparsers.add_parser("run", help="Run task functions once, now")
    run_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
    run_parser.add_argument("--task", help="Run one task by name")

    daemon_parser = subparsers.add_parser("daemon", help="Start all enabled tasks and block")
    daemon_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
    daemon_parser.add_argument(
        "--poll-seconds",
        type=int,
        default=DEFAULT_POLL_SECONDS,
        help=f"Status polling interval in seconds (default: {DEFAULT_POLL_SECONDS})",
    )

    cron_parser = subparsers.add_parser("cron", help="Translate a 5-field cron string and preview it")
    cron_parser.add_argument("expr", help='Cron expression, e.g. "*/5 * * * MON-FRI"')
    cron_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_file)
    config_path = Path(getattr(args, "config", None) or DEFAULT_CONFIG).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            if args.count <= 0:
                raise CadenceError("--count must be >= 1")
            return command_preview(config_path, task_name=args.task, count=args.count)
        if args.command == "run":
            return command_run(config_path, task_name=args.task)
        if args.command == "daemon":
            if args.poll_seconds <= 0:
                raise CadenceError("--poll-seconds must be >= 1")
            return command_daemon(config_path, poll_seconds=args.poll_seconds)
        if args.command == "cron":
            if args.count <= 0:
                raise CadenceError("--count must be >= 1")
            return command_cron(args.expr, count=args.count)
        raise CadenceError(f"Unsupported command: {args.command}")
    except CadenceError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
