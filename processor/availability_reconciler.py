"""Reconciliation of total and booked slots into available-slot counts."""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Set, Tuple

from processor.appointment_processor import is_placeholder_resource
from processor.errors import MalformedRecordError, SyncError
from processor.models import (
    AppointmentRecord,
    AppointmentType,
    AppointmentStatus,
    Category,
    MonthlyCount,
    ReconciliationResult,
    SlotCount,
    SlotTotal,
    TimeWindow,
)
from processor.normalizer import normalize

logger = logging.getLogger(__name__)


ScopeKey = Tuple[date, str, Category]
MonthKey = Tuple[str, Optional[str], Category]


@dataclass
class IncompleteScopes:
    """
    Output scopes whose inputs failed to fetch in this pass.

    A failure is charged to the appointment type that failed: its group
    (normalized type label) and its resources. A type without known
    resources marks every resource of the category, stored under ``None``.
    """
    groups: Set[ScopeKey] = field(default_factory=set)
    resources: Set[Tuple[date, Optional[str], Category]] = field(default_factory=set)
    months: Set[MonthKey] = field(default_factory=set)

    def mark_dates(self, appointment_type: AppointmentType, days: Iterable[date]) -> None:
        category = appointment_type.category
        group_key = _group_key(appointment_type.label)
        resource_ids = _type_resources(appointment_type)
        for day in days:
            self.groups.add((day, group_key, category))
            for resource_id in resource_ids:
                self.resources.add((day, resource_id, category))

    def mark_months(self, appointment_type: AppointmentType, months: Iterable[str]) -> None:
        resource_ids = _type_resources(appointment_type)
        for month in months:
            for resource_id in resource_ids:
                self.months.add((month, resource_id, appointment_type.category))

    def update(self, other: 'IncompleteScopes') -> None:
        self.groups |= other.groups
        self.resources |= other.resources
        self.months |= other.months

    def blocks_group(self, day: date, group_key: str, category: Category) -> bool:
        return (day, group_key, category) in self.groups

    def blocks_resource(self, day: date, resource_id: Optional[str], category: Category) -> bool:
        return (
            (day, resource_id, category) in self.resources
            or (day, None, category) in self.resources
        )

    def blocks_month(self, month: str, resource_id: Optional[str], category: Category) -> bool:
        return (
            (month, resource_id, category) in self.months
            or (month, None, category) in self.months
        )

    def __bool__(self) -> bool:
        return bool(self.groups or self.resources or self.months)


def _group_key(label: Optional[str]) -> str:
    return normalize(label) if label else ''


def _type_resources(appointment_type: AppointmentType) -> List[Optional[str]]:
    resource_ids = [
        str(r) for r in appointment_type.resource_ids if not is_placeholder_resource(r)
    ]
    return resource_ids or [None]


class AvailabilityReconciler:
    """
    Combines theoretical slot totals with booked appointments.

    Output is produced at two granularities: per resource, and per group
    (store), where the group is the normalized label of the appointment type
    the slots or bookings were observed under. Group rows are summed from
    the same inputs as resource rows, never queried separately.
    """

    def __init__(self, exclude_unclassified: bool = False):
        self.exclude_unclassified = exclude_unclassified

    def reconcile(
        self,
        window: TimeWindow,
        slot_totals: Iterable[SlotTotal],
        appointments: Iterable[AppointmentRecord],
        incomplete: Optional[IncompleteScopes] = None
    ) -> ReconciliationResult:
        """
        Build SlotCount rows for a window.

        Args:
            window: Dates to reconcile; inputs outside it are ignored
            slot_totals: Theoretical slot counts from availability queries
            appointments: Appointment records fetched for the same window
            incomplete: Group and resource scopes whose inputs failed to
                fetch; no rows are produced for them in this pass

        Returns:
            ReconciliationResult with per-resource and per-group rows
        """
        incomplete = incomplete or IncompleteScopes()
        total_by_resource: Dict[ScopeKey, int] = defaultdict(int)
        booked_by_resource: Dict[ScopeKey, int] = defaultdict(int)
        total_by_group: Dict[ScopeKey, int] = defaultdict(int)
        booked_by_group: Dict[ScopeKey, int] = defaultdict(int)
        resource_labels: Dict[str, str] = {}
        skipped: Dict[Tuple, SyncError] = {}

        for total in slot_totals:
            if not self._in_scope(window, total.date, total.category_defaulted):
                continue
            self._accumulate(
                total.date, total.resource_id, total.resource_label,
                total.group_label, total.category, total.total_slots,
                total_by_resource, total_by_group, resource_labels, skipped
            )

        for record in appointments:
            if record.status == AppointmentStatus.CANCELED:
                continue
            if not self._in_scope(window, record.appointment_date, record.category_defaulted):
                continue
            self._accumulate(
                record.appointment_date, record.resource_id, record.resource_label,
                record.type_label, record.category, 1,
                booked_by_resource, booked_by_group, resource_labels, skipped
            )

        if incomplete:
            for counts in (total_by_resource, booked_by_resource):
                for key in [k for k in counts if incomplete.blocks_resource(*k)]:
                    del counts[key]
            for counts in (total_by_group, booked_by_group):
                for key in [k for k in counts if incomplete.blocks_group(*k)]:
                    del counts[key]

        by_resource = self._emit(total_by_resource, booked_by_resource, resource_labels)
        by_group = self._emit(total_by_group, booked_by_group)

        for error in skipped.values():
            logger.warning(str(error), extra={'diagnostic': type(error).__name__})

        logger.info(
            f"Reconciled {len(by_resource)} resource rows and {len(by_group)} "
            f"group rows for {window}"
        )
        return ReconciliationResult(
            by_resource=by_resource,
            by_group=by_group,
            skipped=list(skipped.values()),
        )

    def _in_scope(self, window: TimeWindow, day: date, defaulted: bool) -> bool:
        if not window.contains(day):
            return False
        return not (defaulted and self.exclude_unclassified)

    @staticmethod
    def _accumulate(
        day: date,
        resource_id: Optional[str],
        resource_label: Optional[str],
        group_label: Optional[str],
        category: Category,
        count: int,
        by_resource: Dict[ScopeKey, int],
        by_group: Dict[ScopeKey, int],
        resource_labels: Dict[str, str],
        skipped: Dict[Tuple, SyncError]
    ) -> None:
        group_key = _group_key(group_label)

        if is_placeholder_resource(resource_id):
            key = (day, group_key, category)
            if key not in skipped:
                skipped[key] = MalformedRecordError(
                    f"Skipping unidentified resource on {day.isoformat()} "
                    f"({category.value}, group '{group_key or '?'}') in "
                    f"per-resource output",
                    identifier=f"{day.isoformat()}/{group_key or '?'}/{category.value}"
                )
        else:
            by_resource[(day, resource_id, category)] += count
            if resource_label:
                resource_labels.setdefault(resource_id, resource_label)

        if group_key:
            by_group[(day, group_key, category)] += count

    @staticmethod
    def _emit(
        totals: Dict[ScopeKey, int],
        booked: Dict[ScopeKey, int],
        labels: Optional[Dict[str, str]] = None
    ) -> List[SlotCount]:
        rows = []
        for key in sorted(set(totals) | set(booked), key=_sort_key):
            day, scope_key, category = key
            scope_label = labels.get(scope_key, scope_key) if labels else scope_key
            rows.append(SlotCount.build(
                day=day,
                scope_key=scope_key,
                scope_label=scope_label,
                category=category,
                total_slots=totals.get(key, 0),
                booked_slots=booked.get(key, 0),
            ))
        return rows


def count_by_month(
    appointments: Iterable[AppointmentRecord],
    exclude_unclassified: bool = False,
    incomplete: Optional[IncompleteScopes] = None
) -> List[MonthlyCount]:
    """
    Count appointments per (month, resource, category) by status.

    Args:
        appointments: Deduplicated appointment records, canceled included
        exclude_unclassified: Skip records whose category was defaulted
        incomplete: Scopes whose appointment queries failed; matching
            (month, resource, category) rows are left out

    Returns:
        List of MonthlyCount rows
    """
    incomplete = incomplete or IncompleteScopes()
    counts: Dict[Tuple[str, str, Category], MonthlyCount] = {}
    skipped = 0

    for record in appointments:
        if exclude_unclassified and record.category_defaulted:
            continue
        if is_placeholder_resource(record.resource_id):
            skipped += 1
            continue

        month = record.start_time.strftime('%Y-%m')
        if incomplete.blocks_month(month, record.resource_id, record.category):
            continue
        key = (month, record.resource_id, record.category)
        row = counts.get(key)
        if row is None:
            row = MonthlyCount(
                month=month,
                scope_key=record.resource_id,
                scope_label=record.resource_label or record.resource_id,
                category=record.category,
            )
            counts[key] = row

        if record.status == AppointmentStatus.CANCELED:
            row.canceled_count += 1
        elif record.status == AppointmentStatus.RESCHEDULED:
            row.rescheduled_count += 1
        else:
            row.scheduled_count += 1

    if skipped:
        logger.info(f"Skipped {skipped} appointments without a resource in monthly counts")

    return [counts[key] for key in sorted(counts, key=lambda k: (k[0], k[1], k[2].value))]


def _sort_key(key: ScopeKey) -> Tuple[date, str, str]:
    day, scope_key, category = key
    return day, scope_key, category.value
