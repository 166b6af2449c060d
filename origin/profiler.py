"""Call-time profiling with slow-call records and periodic reports."""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional

from origin import log

# Longer than this usually means a deadlock, an endless loop or very poor code.
DEFAULT_MAX_OVERTIME = 5.0
# Calls taking at least this long are recorded.
DEFAULT_OVERTIME = 0.01
DEFAULT_MAX_RECORD_NUM = 100


class RecordType(IntEnum):
    MAX_OVERTIME = 1
    OVERTIME = 2


@dataclass(frozen=True)
class Record:
    """A call that took longer than the profiler's threshold."""

    rtype: RecordType
    cost_time: float
    record_name: str


@dataclass
class _Element:
    tag_name: str
    push_time: float


ReportFunction = Callable[[str, int, float, "list[Record]"], object]


class Analyzer:
    """Handle for one timed call; ``pop`` ends the measurement."""

    def __init__(self, profiler: "Profiler", key: int) -> None:
        self._profiler = profiler
        self._key = key

    def pop(self) -> None:
        self._profiler._pop(self._key)

    def __enter__(self) -> "Analyzer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.pop()


class Profiler:
    """Tracks running calls, counts them and records the slow ones."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stack: dict[int, _Element] = {}
        self._keys = itertools.count()
        self._records: list[Record] = []
        self.call_num = 0
        self.total_cost_time = 0.0
        self.max_over_time = DEFAULT_MAX_OVERTIME
        self.over_time = DEFAULT_OVERTIME
        self.max_record_num = DEFAULT_MAX_RECORD_NUM

    @property
    def records(self) -> list[Record]:
        with self._lock:
            return list(self._records)

    def set_max_over_time(self, seconds: float) -> None:
        self.max_over_time = seconds

    def set_over_time(self, seconds: float) -> None:
        self.over_time = seconds

    def set_max_record_num(self, num: int) -> None:
        self.max_record_num = num

    def push(self, tag: str) -> Analyzer:
        """Start timing a call named ``tag``."""
        with self._lock:
            key = next(self._keys)
            self._stack[key] = _Element(tag, time.monotonic())
        return Analyzer(self, key)

    def _check(self, element: _Element, now: float) -> tuple[Optional[Record], float]:
        cost = now - element.push_time
        if cost < self.over_time:
            return None, cost
        rtype = RecordType.MAX_OVERTIME if cost > self.max_over_time else RecordType.OVERTIME
        return Record(rtype, cost, element.tag_name), cost

    def _push_record(self, record: Record) -> None:
        limit = self.max_record_num if self.max_record_num > 0 else DEFAULT_MAX_RECORD_NUM
        while len(self._records) >= limit:
            self._records.pop(0)
        self._records.append(record)

    def _pop(self, key: int) -> None:
        with self._lock:
            element = self._stack.pop(key, None)
            if element is None:
                return
            record, cost = self._check(element, time.monotonic())
            self.call_num += 1
            self.total_cost_time += cost
            if record is not None:
                self._push_record(record)

    def _collect(self) -> Optional[list[Record]]:
        with self._lock:
            now = time.monotonic()
            for element in reversed(list(self._stack.values())):
                record, _ = self._check(element, now)
                if record is not None:
                    self._push_record(record)
            if not self._records:
                return None
            records, self._records = self._records, []
            return records


_profilers: dict[str, Profiler] = {}


def reg_profiler(name: str) -> Profiler:
    """Create and register a profiler; names must be unique."""
    if name in _profilers:
        raise ValueError(f"profiler {name} is already registered")
    profiler = Profiler()
    _profilers[name] = profiler
    return profiler


def default_report_function(
    name: str, call_num: int, cost_time: float, records: list[Record]
) -> Optional[str]:
    """Log a summary of ``records`` and return it; nothing when there are none."""
    if not records:
        return None
    total_ms = int(cost_time * 1000)
    average = total_ms // call_num if call_num > 0 else 0
    lines = [
        f"Profiler report tag {name}:\n",
        f"process count {call_num},take time {total_ms} Milliseconds,"
        f"average {average} Milliseconds/per.\n",
    ]
    for record in records:
        kind = "too slow process" if record.rtype == RecordType.MAX_OVERTIME else "slow process"
        lines.append(
            f"{kind}:{record.record_name} is take {int(record.cost_time * 1000)} Milliseconds\n"
        )
    report_text = "".join(lines)
    log.srelease(report_text)
    return report_text


_report_func: ReportFunction = default_report_function


def set_report_function(report_fun: ReportFunction) -> None:
    global _report_func
    _report_func = report_fun


def report() -> None:
    """Report every profiler that has collected slow calls since the last report."""
    for name, profiler in list(_profilers.items()):
        records = profiler._collect()
        if records:
            _report_func(name, profiler.call_num, profiler.total_cost_time, records)