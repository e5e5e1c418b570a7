"""Adaptive window subdivision for capped vendor queries."""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from processor.errors import SchedulingApiError
from processor.models import AppointmentFilters, AvailableSlot, TimeWindow

logger = logging.getLogger(__name__)


def dedupe_by_id(records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Deduplicate raw records by their vendor ``id``; the last one wins.

    Records without an id are passed through so that they can be reported
    as malformed downstream.
    """
    unique: Dict[str, Dict[str, Any]] = {}
    without_id = []
    for record in records:
        record_id = record.get('id')
        if record_id is None or record_id == '':
            without_id.append(record)
            continue
        unique[str(record_id)] = record
    return list(unique.values()) + without_id


@dataclass
class FetchResult:
    """Records returned for a window plus what went wrong fetching them."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[SchedulingApiError] = field(default_factory=list)
    failed_windows: List[TimeWindow] = field(default_factory=list)
    capped_windows: List[TimeWindow] = field(default_factory=list)
    queries: int = 0

    @classmethod
    def combine(cls, results: Sequence['FetchResult']) -> 'FetchResult':
        combined = cls()
        for result in results:
            combined.records.extend(result.records)
            combined.errors.extend(result.errors)
            combined.failed_windows.extend(result.failed_windows)
            combined.capped_windows.extend(result.capped_windows)
            combined.queries += result.queries
        combined.records = dedupe_by_id(combined.records)
        return combined


@dataclass
class SlotCountResult:
    """Available-slot totals per resource for one (date, type)."""
    totals: Dict[Optional[str], int] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    errors: List[SchedulingApiError] = field(default_factory=list)
    capped: List[str] = field(default_factory=list)
    queries: int = 0

    def add_slots(self, slots: Sequence[AvailableSlot]) -> None:
        for slot in slots:
            self.totals[slot.resource_id] = self.totals.get(slot.resource_id, 0) + 1
            if slot.resource_id and slot.resource_label:
                self.labels[slot.resource_id] = slot.resource_label

    def merge(self, other: 'SlotCountResult') -> None:
        for resource_id, count in other.totals.items():
            self.totals[resource_id] = self.totals.get(resource_id, 0) + count
        self.labels.update(other.labels)
        self.errors.extend(other.errors)
        self.capped.extend(other.capped)
        self.queries += other.queries

    @property
    def failed(self) -> bool:
        return bool(self.errors)


class AdaptiveWindowFetcher:
    """
    Fetches complete result sets from an API that silently caps each query.

    A query that comes back full is re-issued over smaller windows: a
    month-scale window is split into 7-day chunks, a week into days. A
    single day is the floor. At very high density a day can still exceed
    the cap; that page is accepted and reported in ``capped_windows``.
    """

    MAX_DEPTH = 3
    SUBDIVISION_DAYS = {0: 7, 1: 1}

    def __init__(self, client, result_cap: int = 100, max_concurrency: int = 5):
        """
        Initialize the fetcher.

        Args:
            client: Scheduling API client
            result_cap: Record count at which a page is presumed truncated
            max_concurrency: Maximum number of in-flight vendor requests
        """
        self.client = client
        self.result_cap = result_cap
        self.max_concurrency = max(1, max_concurrency)
        self._request_gate = threading.BoundedSemaphore(self.max_concurrency)

    def fetch_range(
        self,
        window: TimeWindow,
        filters: AppointmentFilters
    ) -> FetchResult:
        """
        Fetch a multi-month window one calendar month at a time.

        Args:
            window: Window to fetch, of any length
            filters: Query filters

        Returns:
            FetchResult with records deduplicated across months
        """
        monthly = [self.fetch(month, filters) for month in window.split_by_month()]
        result = FetchResult.combine(monthly)
        logger.info(
            f"Fetched {len(result.records)} unique appointments for {window} "
            f"in {result.queries} queries",
            extra={'window': str(window), 'type_id': filters.type_id}
        )
        return result

    def fetch(
        self,
        window: TimeWindow,
        filters: AppointmentFilters,
        depth: int = 0
    ) -> FetchResult:
        """
        Fetch one window, subdividing while pages come back full.

        A failed query yields an empty result for that window; the error is
        returned in ``FetchResult.errors`` rather than raised.
        """
        indent = '  ' * depth
        try:
            records = self._query(window, filters)
        except SchedulingApiError as e:
            logger.warning(
                f"{indent}Query failed for {window} (depth {depth}): {e}",
                extra={
                    'diagnostic': type(e).__name__,
                    'window': str(window),
                    'depth': depth,
                }
            )
            return FetchResult(errors=[e], failed_windows=[window], queries=1)

        logger.debug(
            f"{indent}Fetched {len(records)} records for {window} (depth {depth})"
        )

        if len(records) < self.result_cap:
            return FetchResult(records=records, queries=1)

        subdivisions, level = self._subdivide(window, depth)
        if not subdivisions:
            logger.warning(
                f"{indent}Window {window} reached the cap of {self.result_cap} "
                f"at the recursion floor; accepting {len(records)} records",
                extra={'window': str(window), 'depth': depth}
            )
            return FetchResult(
                records=dedupe_by_id(records),
                capped_windows=[window],
                queries=1
            )

        logger.info(
            f"{indent}Got {len(records)} records (cap {self.result_cap}) for "
            f"{window}; subdividing into {len(subdivisions)} windows",
            extra={'window': str(window), 'depth': depth}
        )

        workers = min(self.max_concurrency, len(subdivisions))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            children = list(executor.map(
                lambda sub: self.fetch(sub, filters, level + 1),
                subdivisions
            ))

        result = FetchResult.combine(children)
        result.queries += 1
        logger.debug(
            f"{indent}After subdivision: {len(result.records)} unique records "
            f"for {window}"
        )
        return result

    def count_slots(
        self,
        day: date,
        type_id: str,
        resource_ids: Sequence[str] = ()
    ) -> SlotCountResult:
        """
        Count available slots per resource for one date and type.

        With known resources, each is queried separately. Otherwise one
        type-wide query is made; if it reaches the cap, it is re-issued per
        resource seen in the returned slots.

        Args:
            day: Date to query
            type_id: Appointment type id
            resource_ids: Resources offering this type, if known

        Returns:
            SlotCountResult keyed by resource id (None for unattributed slots)
        """
        if resource_ids:
            return self._count_per_resource(day, type_id, resource_ids)

        result = SlotCountResult()
        result.queries += 1
        try:
            slots = self._query_slots(day, type_id, None)
        except SchedulingApiError as e:
            self._log_slot_failure(day, type_id, None, e)
            result.errors.append(e)
            return result

        if len(slots) < self.result_cap:
            result.add_slots(slots)
            return result

        observed = sorted({s.resource_id for s in slots if s.resource_id})
        if not observed:
            self._log_slot_cap(day, type_id, None)
            result.add_slots(slots)
            result.capped.append(f"{day.isoformat()}/{type_id}")
            return result

        result.merge(self._count_per_resource(day, type_id, observed))
        return result

    def _count_per_resource(
        self,
        day: date,
        type_id: str,
        resource_ids: Sequence[str]
    ) -> SlotCountResult:
        workers = min(self.max_concurrency, len(resource_ids))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            partials = list(executor.map(
                lambda resource_id: self._count_resource(day, type_id, resource_id),
                resource_ids
            ))

        result = SlotCountResult()
        for partial in partials:
            result.merge(partial)
        return result

    def _count_resource(
        self,
        day: date,
        type_id: str,
        resource_id: str
    ) -> SlotCountResult:
        result = SlotCountResult(queries=1)
        try:
            slots = self._query_slots(day, type_id, resource_id)
        except SchedulingApiError as e:
            self._log_slot_failure(day, type_id, resource_id, e)
            result.errors.append(e)
            return result

        if len(slots) >= self.result_cap:
            self._log_slot_cap(day, type_id, resource_id)
            result.capped.append(f"{day.isoformat()}/{type_id}/{resource_id}")

        # Slots queried for a resource belong to it even if unattributed.
        for slot in slots:
            if not slot.resource_id:
                slot.resource_id = resource_id
        result.add_slots(slots)
        result.totals.setdefault(resource_id, 0)
        return result

    def _subdivide(
        self,
        window: TimeWindow,
        depth: int
    ) -> Tuple[List[TimeWindow], int]:
        """
        Pick the next split for a full window.

        Levels whose chunk size would not actually split the window are
        skipped so that the same window is never queried twice.

        Returns:
            Tuple of (subwindows, level used); empty list at the floor
        """
        level = depth
        while window.days > 1 and level < self.MAX_DEPTH:
            chunk_days = self.SUBDIVISION_DAYS.get(level)
            if chunk_days is None:
                break
            chunks = window.split(chunk_days)
            if len(chunks) > 1:
                return chunks, level
            level += 1
        return [], depth

    def _query(
        self,
        window: TimeWindow,
        filters: AppointmentFilters
    ) -> List[Dict[str, Any]]:
        with self._request_gate:
            return self.client.list_appointments(window, filters)

    def _query_slots(
        self,
        day: date,
        type_id: str,
        resource_id: Optional[str]
    ) -> List[AvailableSlot]:
        with self._request_gate:
            return self.client.list_available_slots(day, type_id, resource_id)

    @staticmethod
    def _log_slot_failure(day, type_id, resource_id, error) -> None:
        logger.warning(
            f"Availability query failed for {day.isoformat()} type {type_id} "
            f"resource {resource_id}: {error}",
            extra={'diagnostic': type(error).__name__, 'type_id': type_id}
        )

    def _log_slot_cap(self, day, type_id, resource_id) -> None:
        logger.warning(
            f"Availability for {day.isoformat()} type {type_id} resource "
            f"{resource_id} reached the cap of {self.result_cap}; accepting as-is",
            extra={'type_id': type_id}
        )
