"""Data models for scheduling sync."""
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from processor.errors import SyncError


class Category(str, Enum):
    """Business line an appointment type belongs to."""
    MEASUREMENT = 'measurement'
    FITTING = 'fitting'


class AppointmentStatus(str, Enum):
    """Lifecycle state of a booking."""
    SCHEDULED = 'scheduled'
    CANCELED = 'canceled'
    RESCHEDULED = 'rescheduled'


class SyncStatus(str, Enum):
    """State of a single sync run."""
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCESS = 'success'
    PARTIAL_FAILURE = 'partial_failure'
    FAILURE = 'failure'


_ALLOWED_TRANSITIONS = {
    SyncStatus.PENDING: {SyncStatus.RUNNING, SyncStatus.FAILURE},
    SyncStatus.RUNNING: {
        SyncStatus.SUCCESS,
        SyncStatus.PARTIAL_FAILURE,
        SyncStatus.FAILURE,
    },
}


@dataclass(frozen=True)
class TimeWindow:
    """Closed, inclusive date interval used to scope vendor queries."""
    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(
                f"Window start {self.start} is after window end {self.end}"
            )

    @property
    def days(self) -> int:
        """Number of calendar days covered, counting both ends."""
        return (self.end - self.start).days + 1

    def dates(self) -> List[date]:
        return [self.start + timedelta(days=i) for i in range(self.days)]

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def split(self, chunk_days: int) -> List['TimeWindow']:
        """
        Split into consecutive chunks of at most ``chunk_days`` days.

        Args:
            chunk_days: Maximum number of days per chunk

        Returns:
            List of non-overlapping windows covering this window
        """
        if chunk_days < 1:
            raise ValueError("chunk_days must be at least 1")

        chunks = []
        current = self.start
        while current <= self.end:
            chunk_end = min(current + timedelta(days=chunk_days - 1), self.end)
            chunks.append(TimeWindow(current, chunk_end))
            current = chunk_end + timedelta(days=1)
        return chunks

    def split_by_month(self) -> List['TimeWindow']:
        """Split into one window per calendar month, clipped to this window."""
        months = []
        current = self.start
        while current <= self.end:
            if current.month == 12:
                next_month = date(current.year + 1, 1, 1)
            else:
                next_month = date(current.year, current.month + 1, 1)
            month_end = min(next_month - timedelta(days=1), self.end)
            months.append(TimeWindow(current, month_end))
            current = next_month
        return months

    def month_bounds(self) -> 'TimeWindow':
        """Widen to the first day of the start month and last day of the end month."""
        first = self.start.replace(day=1)
        if self.end.month == 12:
            last = date(self.end.year, 12, 31)
        else:
            last = date(self.end.year, self.end.month + 1, 1) - timedelta(days=1)
        return TimeWindow(first, last)

    def months(self) -> List[str]:
        """Calendar months touched by this window, as ``YYYY-MM``."""
        return [m.start.strftime('%Y-%m') for m in self.split_by_month()]

    def __str__(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


@dataclass
class AppointmentType:
    """Appointment type as listed by the vendor, plus its assigned category."""
    id: str
    label: str
    category_hint: Optional[str] = None
    scheduling_link_hint: Optional[str] = None
    resource_ids: List[str] = field(default_factory=list)
    active: bool = True
    category: Optional[Category] = None
    category_defaulted: bool = False


@dataclass
class Resource:
    """Individually schedulable resource (employee calendar)."""
    id: str
    label: str


@dataclass(frozen=True)
class AppointmentFilters:
    """Scoping filters for appointment queries."""
    type_id: Optional[str] = None
    resource_id: Optional[str] = None
    canceled: Optional[bool] = None


@dataclass
class AvailableSlot:
    """Single bookable time returned by the availability endpoint."""
    resource_id: Optional[str]
    resource_label: Optional[str]
    time: str


@dataclass
class AppointmentRecord:
    """Validated booking fetched from the vendor."""
    external_id: str
    resource_id: Optional[str]
    resource_label: Optional[str]
    type_id: str
    type_label: str
    category: Category
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus
    category_defaulted: bool = False

    @property
    def appointment_date(self) -> date:
        """Calendar date of the booking in the vendor's local time."""
        return self.start_time.date()


@dataclass
class SlotTotal:
    """Theoretical slot count observed for one resource under one type."""
    date: date
    resource_id: Optional[str]
    resource_label: Optional[str]
    group_label: Optional[str]
    category: Category
    total_slots: int
    category_defaulted: bool = False


@dataclass
class SlotCount:
    """Reconciled availability for one (date, scope, category)."""
    date: date
    scope_key: str
    scope_label: str
    category: Category
    total_slots: int
    booked_slots: int
    available_slots: int

    def __post_init__(self):
        if self.booked_slots < 0 or self.total_slots < 0:
            raise ValueError("Slot counts must be non-negative")
        if self.available_slots != max(0, self.total_slots - self.booked_slots):
            raise ValueError(
                f"available_slots={self.available_slots} does not match "
                f"total={self.total_slots} booked={self.booked_slots}"
            )

    @classmethod
    def build(
        cls,
        day: date,
        scope_key: str,
        scope_label: str,
        category: Category,
        total_slots: int,
        booked_slots: int
    ) -> 'SlotCount':
        return cls(
            date=day,
            scope_key=scope_key,
            scope_label=scope_label,
            category=category,
            total_slots=total_slots,
            booked_slots=booked_slots,
            available_slots=max(0, total_slots - booked_slots),
        )


@dataclass
class MonthlyCount:
    """Appointment counts per month, resource and category."""
    month: str
    scope_key: str
    scope_label: str
    category: Category
    scheduled_count: int = 0
    canceled_count: int = 0
    rescheduled_count: int = 0

    @property
    def total_count(self) -> int:
        return self.scheduled_count + self.canceled_count + self.rescheduled_count


@dataclass
class ReconciliationResult:
    """Output of availability reconciliation."""
    by_resource: List[SlotCount]
    by_group: List[SlotCount]
    skipped: List[SyncError] = field(default_factory=list)


@dataclass
class UpsertResult:
    """Result of an upsert call against the persistence sink."""
    written: int
    failed: int
    errors: List[SyncError] = field(default_factory=list)


@dataclass
class SyncSummary:
    """Counters and state for one sync run."""
    SAMPLE_LIMIT = 10

    run_id: str
    window: Optional[TimeWindow] = None
    status: SyncStatus = SyncStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    appointment_types: int = 0
    types_succeeded: int = 0
    types_failed: int = 0
    appointments_fetched: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    tables: Dict[str, int] = field(default_factory=dict)
    error_counts: Dict[str, int] = field(default_factory=dict)
    skipped_samples: List[str] = field(default_factory=list)
    failed_samples: List[str] = field(default_factory=list)
    unclassified_types: List[str] = field(default_factory=list)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def transition(self, new_status: SyncStatus) -> None:
        """
        Move the run to a new state.

        Raises:
            ValueError: If the transition is not allowed
        """
        allowed = _ALLOWED_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise ValueError(
                f"Illegal sync status transition: {self.status.value} -> "
                f"{new_status.value}"
            )
        self.status = new_status
        timestamp = datetime.now().isoformat(timespec='seconds')
        if new_status == SyncStatus.RUNNING:
            self.started_at = timestamp
        else:
            self.completed_at = timestamp

    def record_skip(self, error: SyncError) -> None:
        """Count a record or resource that was dropped without failing."""
        with self._lock:
            self.skipped += 1
            self._count(error)
            if error.identifier and len(self.skipped_samples) < self.SAMPLE_LIMIT:
                self.skipped_samples.append(error.identifier)

    def record_failure(self, error: SyncError) -> None:
        """Count a query or row that failed during this pass."""
        with self._lock:
            self.failed += 1
            self._count(error)
            if error.identifier and len(self.failed_samples) < self.SAMPLE_LIMIT:
                self.failed_samples.append(error.identifier)

    def record_synced(self, table_key: str, count: int) -> None:
        with self._lock:
            self.synced += count
            self.tables[table_key] = self.tables.get(table_key, 0) + count

    def _count(self, error: SyncError) -> None:
        name = type(error).__name__
        self.error_counts[name] = self.error_counts.get(name, 0) + 1

    def to_dict(self) -> dict:
        return {
            'run_id': self.run_id,
            'status': self.status.value,
            'window': str(self.window) if self.window else None,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'appointment_types': self.appointment_types,
            'types_succeeded': self.types_succeeded,
            'types_failed': self.types_failed,
            'appointments_fetched': self.appointments_fetched,
            'synced': self.synced,
            'skipped': self.skipped,
            'failed': self.failed,
            'cancelled': self.cancelled,
            'tables': dict(self.tables),
            'error_counts': dict(self.error_counts),
            'skipped_samples': list(self.skipped_samples),
            'failed_samples': list(self.failed_samples),
            'unclassified_types': list(self.unclassified_types),
        }
