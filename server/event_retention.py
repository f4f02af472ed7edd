"""
Retention sweeps: count or delete the old events of every device in a group.

A sweep resolves the group's members (inactive devices included), then walks
them strictly in resolver order, one device at a time, pausing between
devices so the shared database is never saturated. Delete pauses scale with
how long the previous delete took; count pauses are flat.

Some engines cannot report exact row counts. The event store signals that
with -1, which is carried here as EventCount.UNKNOWN and only turned back
into -1 at the count_old_events/delete_old_events boundary.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from config import config
from device_lookup import get_device
from errors import PartialSweepFailure, StorageUnavailableError
from event_store import event_store as default_event_store
from group_membership import get_device_ids_for_group
from models import Account, normalize_id
from observability import structured_logger, metrics

logger = logging.getLogger(__name__)

# Delete pacing: min(CAP, RATIO_NUM * elapsed / RATIO_DEN + FLOOR)
PACING_FLOOR_MS = 500
PACING_RATIO_NUM_MS = 4500
PACING_RATIO_DEN_MS = 30000
PACING_CAP_MS = 5000
COUNT_PACING_MS = 500

UNKNOWN_COUNT = -1
MIN_CUTOFF = 1


def pacing_delay_ms(elapsed_ms: int, delete_mode: bool) -> int:
    """Pause before the next device, given how long the last operation took"""
    if not delete_mode:
        return COUNT_PACING_MS
    elapsed_ms = max(int(elapsed_ms), 0)
    delay = (PACING_RATIO_NUM_MS * elapsed_ms) // PACING_RATIO_DEN_MS + PACING_FLOOR_MS
    return min(delay, PACING_CAP_MS)


class SweepMode(str, Enum):
    COUNT = "count"
    DELETE = "delete"


@dataclass(frozen=True)
class EventCount:
    """An exact event count, or UNKNOWN when the engine could not say"""
    value: Optional[int]

    @classmethod
    def of(cls, raw: int) -> "EventCount":
        return cls.UNKNOWN if raw < 0 else cls(raw)

    @property
    def is_unknown(self) -> bool:
        return self.value is None

    def as_int(self) -> int:
        return UNKNOWN_COUNT if self.value is None else self.value

    def __str__(self) -> str:
        return "?" if self.value is None else str(self.value)


EventCount.UNKNOWN = EventCount(None)
EventCount.ZERO = EventCount(0)


@dataclass
class DeviceSweepOutcome:
    device_id: str
    count: Optional[EventCount] = None
    elapsed_ms: int = 0
    message: str = ""
    skipped: bool = False
    error: Optional[str] = None


@dataclass
class SweepResult:
    mode: SweepMode
    account_id: Optional[str]
    group_id: str
    cutoff: int
    total: EventCount = EventCount.ZERO
    devices: List[DeviceSweepOutcome] = field(default_factory=list)
    aborted: bool = False
    error: Optional[PartialSweepFailure] = None
    used_retained_date: bool = False

    def as_int(self) -> int:
        return self.total.as_int()


def _format_time(epoch_seconds: int) -> str:
    return datetime.fromtimestamp(epoch_seconds, timezone.utc).strftime("%Y-%m-%d %H:%M:%S %Z")


class RetentionSweeper:
    """
    Sequential, self-throttled count/delete of old events across a group.

    Args:
        event_store: Object with count_events_before/delete_events_before
        sleep: Called with seconds between devices
        clock: Monotonic clock in seconds, used to time each device
        out: Line sink for verbose output (defaults to print)
    """

    def __init__(
        self,
        event_store=None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        out: Optional[Callable[[str], None]] = None
    ):
        self.event_store = event_store or default_event_store
        self.sleep = sleep
        self.clock = clock
        self.out = out or print

    def count_old_events(self, db: Session, account: Optional[Account], group_id: str,
                         cutoff: int, verbose: bool = False) -> int:
        """Count events older than cutoff; -1 if the count is unknowable"""
        return self.sweep(db, SweepMode.COUNT, account, group_id, cutoff, verbose).as_int()

    def delete_old_events(self, db: Session, account: Optional[Account], group_id: str,
                          cutoff: int, verbose: bool = False) -> int:
        """
        Delete events older than cutoff; -1 if deletion ran but the count is unknowable.

        Raises PartialSweepFailure, carrying the total deleted so far, when the
        sweep stopped before the last device.
        """
        result = self.sweep(db, SweepMode.DELETE, account, group_id, cutoff, verbose)
        if result.aborted:
            raise result.error
        return result.as_int()

    @staticmethod
    def _end_read(db: Session) -> None:
        # Per-device writes commit in the event store; whatever is left open is a read
        if db.in_transaction():
            db.rollback()

    def _pause(self, delay_ms: int) -> None:
        if config.sweep_pacing_enabled and delay_ms > 0:
            self.sleep(delay_ms / 1000.0)

    def sweep(
        self,
        db: Session,
        mode: SweepMode,
        account: Optional[Account],
        group_id: str,
        cutoff: int,
        verbose: bool = False,
        now: Optional[int] = None
    ) -> SweepResult:
        delete_mode = mode == SweepMode.DELETE
        group_id = normalize_id(group_id)

        if account is None:
            if verbose:
                self.out("  Account is null")
            return SweepResult(mode=mode, account_id=None, group_id=group_id, cutoff=cutoff)
        account_id = account.account_id

        used_retained_date = False
        if delete_mode:
            adjusted = account.adjust_retained_event_time(cutoff, now)
            if adjusted != cutoff:
                cutoff = adjusted
                used_retained_date = True
            cutoff = max(cutoff, MIN_CUTOFF)

        result = SweepResult(
            mode=mode,
            account_id=account_id,
            group_id=group_id,
            cutoff=cutoff,
            used_retained_date=used_retained_date
        )
        label = f"{account_id}/{group_id}"

        if verbose:
            action = "Deleting" if delete_mode else "Counting"
            header = f"{action} old events for group {label} prior to {_format_time(cutoff)}"
            if used_retained_date:
                header += " (retained-date)"
            self.out(header)

        device_ids = get_device_ids_for_group(db, account_id, group_id, include_inactive=True)
        # End the read before any per-device work
        db.commit()

        if len(device_ids) <= 0:
            # Also covers a missing account or group
            if verbose:
                self.out(f"  No Devices Found: {label}")
            self._finish(result, 0, False, verbose, label)
            return result

        structured_logger.log_event(
            "retention.sweep.started",
            mode=mode.value,
            account_id=account_id,
            group_id=group_id,
            cutoff=cutoff,
            device_count=len(device_ids),
            used_retained_date=used_retained_date
        )

        total = 0
        saw_unknown = False
        last_index = len(device_ids) - 1
        for index, device_id in enumerate(device_ids):
            outcome = DeviceSweepOutcome(device_id=device_id)
            result.devices.append(outcome)

            try:
                device = get_device(db, account_id, device_id)
            except StorageUnavailableError as e:
                self._end_read(db)
                outcome.error = str(e)
                if delete_mode:
                    result.aborted = True
                    result.error = PartialSweepFailure(account_id, device_id, total, e)
                    logger.exception(f"Unable to read device: {account_id}/{device_id}")
                    structured_logger.log_event(
                        "retention.device.fetch_failed",
                        level="ERROR",
                        mode=mode.value,
                        account_id=account_id,
                        group_id=group_id,
                        device_id=device_id,
                        partial_total=total,
                        error=str(e)
                    )
                    if verbose:
                        self.out(f"  Aborted at device {account_id}/{device_id}: {e}")
                    break
                structured_logger.log_event(
                    "retention.device.failed",
                    level="WARN",
                    mode=mode.value,
                    account_id=account_id,
                    device_id=device_id,
                    error=str(e)
                )
                device = None

            if device is None:
                self._end_read(db)
                outcome.skipped = True
                if verbose and outcome.error is None:
                    self.out(f"  Device: {account_id + '/' + device_id:<25} - not found")
                if delete_mode:
                    continue
                if index < last_index:
                    self._pause(pacing_delay_ms(0, False))
                continue

            messages: List[str] = []
            start = self.clock()
            try:
                if delete_mode:
                    raw = self.event_store.delete_events_before(db, device, cutoff, messages)
                else:
                    raw = self.event_store.count_events_before(db, device, cutoff, messages)
            except StorageUnavailableError as e:
                if delete_mode:
                    structured_logger.log_event(
                        "retention.sweep.failed",
                        level="ERROR",
                        mode=mode.value,
                        account_id=account_id,
                        group_id=group_id,
                        device_id=device_id,
                        partial_total=total,
                        error=str(e)
                    )
                    metrics.inc_counter("retention_sweeps_total", {"mode": mode.value, "outcome": "failed"})
                    raise
                outcome.error = str(e)
                structured_logger.log_event(
                    "retention.device.failed",
                    level="WARN",
                    mode=mode.value,
                    account_id=account_id,
                    device_id=device_id,
                    error=str(e)
                )
                raw = None
            elapsed_ms = int((self.clock() - start) * 1000)
            self._end_read(db)

            outcome.elapsed_ms = elapsed_ms
            outcome.message = "; ".join(messages)
            metrics.observe_histogram("retention_device_latency_ms", elapsed_ms, {"mode": mode.value})

            if raw is not None:
                outcome.count = EventCount.of(raw)
                if outcome.count.is_unknown:
                    saw_unknown = True
                else:
                    total += outcome.count.value
                if verbose:
                    self.out(self._device_line(delete_mode, account_id, device_id, outcome))
            elif verbose:
                self.out(f"  Device: {account_id + '/' + device_id:<25} - failed: {outcome.error}")

            if index < last_index:
                self._pause(pacing_delay_ms(elapsed_ms, delete_mode))

        self._finish(result, total, saw_unknown, verbose, label)
        return result

    @staticmethod
    def _device_line(delete_mode: bool, account_id: str, device_id: str, outcome: DeviceSweepOutcome) -> str:
        verb = "deleted" if delete_mode else "counted"
        line = f"  Device: {account_id + '/' + device_id:<25} - {verb} {str(outcome.count):>5}"
        if outcome.count.is_unknown:
            line += " (unknown)"
        line += f" [{outcome.elapsed_ms}ms]"
        if outcome.message:
            line += f"  {outcome.message}"
        return line

    def _finish(self, result: SweepResult, total: int, saw_unknown: bool, verbose: bool, label: str) -> None:
        if total <= 0 and saw_unknown:
            result.total = EventCount.UNKNOWN
        else:
            result.total = EventCount(total)

        if verbose:
            verb = "deleted" if result.mode == SweepMode.DELETE else "counted"
            if total > 0:
                self.out(f"  Total : {label:<25} - {verb} {total:>5}")
            elif saw_unknown:
                self.out(f"  Unable to determine event counts: {label}")
            elif result.devices:
                self.out(f"  No Devices with counts greater than zero: {label}")

        outcome = "aborted" if result.aborted else "completed"
        structured_logger.log_event(
            f"retention.sweep.{outcome}",
            level="WARN" if result.aborted else "INFO",
            mode=result.mode.value,
            account_id=result.account_id,
            group_id=result.group_id,
            cutoff=result.cutoff,
            devices=len(result.devices),
            total=result.total.as_int(),
            unknown=result.total.is_unknown
        )
        metrics.inc_counter("retention_sweeps_total", {"mode": result.mode.value, "outcome": outcome})
        if total > 0:
            metrics.inc_counter("retention_events_total", {"mode": result.mode.value}, total)


retention_sweeper = RetentionSweeper()


def count_old_events(db: Session, account: Optional[Account], group_id: str,
                     cutoff: int, verbose: bool = False) -> int:
    return retention_sweeper.count_old_events(db, account, group_id, cutoff, verbose)


def delete_old_events(db: Session, account: Optional[Account], group_id: str,
                      cutoff: int, verbose: bool = False) -> int:
    return retention_sweeper.delete_old_events(db, account, group_id, cutoff, verbose)
