"""Fan-out of scheduled work into independent, retryable units.

A job builds a list of :class:`WorkUnit` objects, one per entity, each keyed by
a stable id. The dispatcher runs every unit in isolation: an exception in one
unit is logged and recorded, never raised into its siblings. Units that share
an owner hold that owner's semaphore while they run, which caps how many of a
single user's units touch the ledger at the same time.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Optional

from sqlalchemy.exc import OperationalError

from notifier import NotificationError

logger = logging.getLogger(__name__)


class MalformedInput(ValueError):
    """Input that can never succeed; the unit is skipped and not retried."""


TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    NotificationError,
    OSError,
)


class UnitOutcome(str, Enum):
    succeeded = "succeeded"
    skipped = "skipped"
    failed = "failed"


@dataclass(frozen=True)
class WorkUnit:
    key: str
    fn: Callable[[], Any]
    owner: Optional[Any] = None


@dataclass
class JobReport:
    succeeded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    results: dict[str, Any] = field(default_factory=dict)

    def record(self, key: str, outcome: UnitOutcome, result: Any = None) -> None:
        getattr(self, outcome.value).append(key)
        if outcome == UnitOutcome.succeeded:
            self.results[key] = result

    def as_dict(self) -> dict[str, object]:
        return {
            "succeeded": len(self.succeeded),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "failed_keys": list(self.failed),
        }


@dataclass
class _OwnerSlot:
    semaphore: threading.BoundedSemaphore
    users: int = 0


@dataclass(frozen=True)
class _EventRoute:
    handler: Callable[[dict], Any]
    key: Callable[[dict], str]
    owner: Callable[[dict], Any]


class Dispatcher:
    def __init__(
        self,
        max_workers: int = 4,
        owner_concurrency: int = 10,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        if owner_concurrency < 1:
            raise ValueError("owner_concurrency must be at least 1")
        self.owner_concurrency = owner_concurrency
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ledger-unit"
        )
        self._guard = threading.Lock()
        self._owner_slots: dict[Any, _OwnerSlot] = {}
        self._in_flight: set[str] = set()
        self._events: dict[str, _EventRoute] = {}

    @contextmanager
    def _owner_slot(self, owner: Any) -> Iterator[None]:
        # A slot lives only while some unit of that owner holds or awaits it.
        with self._guard:
            slot = self._owner_slots.get(owner)
            if slot is None:
                slot = _OwnerSlot(threading.BoundedSemaphore(self.owner_concurrency))
                self._owner_slots[owner] = slot
            slot.users += 1
        try:
            with slot.semaphore:
                yield
        finally:
            with self._guard:
                slot.users -= 1
                if not slot.users:
                    del self._owner_slots[owner]

    def _claim(self, key: str) -> bool:
        with self._guard:
            if key in self._in_flight:
                return False
            self._in_flight.add(key)
            return True

    def _release(self, key: str) -> None:
        with self._guard:
            self._in_flight.discard(key)

    def execute(self, unit: WorkUnit) -> tuple[UnitOutcome, Any]:
        """Run one unit in the calling thread, never raising."""
        if not self._claim(unit.key):
            logger.info(f"unit_already_running: key={unit.key}")
            return UnitOutcome.skipped, None
        try:
            if unit.owner is None:
                return self._attempt(unit)
            with self._owner_slot(unit.owner):
                return self._attempt(unit)
        finally:
            self._release(unit.key)

    def _attempt(self, unit: WorkUnit) -> tuple[UnitOutcome, Any]:
        attempt = 1
        while True:
            try:
                return UnitOutcome.succeeded, unit.fn()
            except MalformedInput as exc:
                logger.warning(f"unit_skipped: key={unit.key} reason={exc}")
                return UnitOutcome.skipped, None
            except TRANSIENT_ERRORS as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        f"unit_failed: key={unit.key} attempts={attempt} error={exc!r}"
                    )
                    return UnitOutcome.failed, None
                logger.warning(
                    f"unit_retry: key={unit.key} attempt={attempt} error={exc!r}"
                )
                if self.retry_delay:
                    time.sleep(self.retry_delay * attempt)
                attempt += 1
            except Exception:
                logger.exception(f"unit_failed: key={unit.key}")
                return UnitOutcome.failed, None

    def submit(self, unit: WorkUnit) -> Future:
        return self._executor.submit(self.execute, unit)

    def run(self, units: Iterable[WorkUnit]) -> JobReport:
        futures = [(unit.key, self.submit(unit)) for unit in units]
        wait([future for _key, future in futures])
        report = JobReport()
        for key, future in futures:
            outcome, result = future.result()
            report.record(key, outcome, result)
        return report

    def register_event(
        self,
        name: str,
        handler: Callable[[dict], Any],
        *,
        key: Optional[Callable[[dict], str]] = None,
        owner: Optional[Callable[[dict], Any]] = None,
    ) -> None:
        self._events[name] = _EventRoute(
            handler=handler,
            key=key or (lambda payload: f"{name}:{payload!r}"),
            owner=owner or (lambda payload: None),
        )

    def emit(self, name: str, payloads: Iterable[dict]) -> list[Future]:
        route = self._events[name]
        futures = []
        for payload in payloads:
            unit = WorkUnit(
                key=route.key(payload),
                fn=lambda payload=payload: route.handler(payload),
                owner=route.owner(payload),
            )
            futures.append(self.submit(unit))
        logger.info(f"event_emitted: name={name} count={len(futures)}")
        return futures

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
