"""Orchestration of a full scheduling sync pass."""
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

from orchestrator.config import SyncConfig
from processor.appointment_processor import AppointmentProcessor
from processor.availability_reconciler import (
    AvailabilityReconciler,
    IncompleteScopes,
    count_by_month,
)
from processor.classifier import Classifier
from processor.errors import (
    ConfigurationError,
    SchedulingApiError,
)
from processor.models import (
    AppointmentFilters,
    AppointmentType,
    SlotTotal,
    SyncStatus,
    SyncSummary,
    TimeWindow,
    UpsertResult,
)
from scraper.window_fetcher import AdaptiveWindowFetcher, dedupe_by_id
from storage.dynamodb_manager import (
    APPOINTMENTS,
    MONTHLY_COUNTS,
    SLOT_COUNTS_BY_GROUP,
    SLOT_COUNTS_BY_RESOURCE,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


def batched(items: Sequence[T], size: int) -> List[Sequence[T]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


@dataclass
class TypeOutcome:
    """What one appointment type contributed to the pass."""
    appointment_type: AppointmentType
    raw_appointments: List[dict] = field(default_factory=list)
    slot_totals: List[SlotTotal] = field(default_factory=list)
    incomplete: IncompleteScopes = field(default_factory=IncompleteScopes)
    failed: bool = False


class SyncOrchestrator:
    """
    Runs appointment and availability sync for every active appointment type.

    Types are processed in bounded concurrent batches, and availability
    dates in smaller sub-batches, with a fixed delay between batches to stay
    under the vendor's rate limit. All writes go through the upsert sink.
    """

    def __init__(
        self,
        client,
        storage,
        config: SyncConfig,
        fetcher: Optional[AdaptiveWindowFetcher] = None,
        processor: Optional[AppointmentProcessor] = None,
        reconciler: Optional[AvailabilityReconciler] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.client = client
        self.storage = storage
        self.config = config
        self.classifier = Classifier(default_category=config.default_category)
        self.fetcher = fetcher or AdaptiveWindowFetcher(
            client,
            result_cap=config.result_cap,
            max_concurrency=config.max_concurrent_requests
        )
        self.processor = processor or AppointmentProcessor(self.classifier)
        self.reconciler = reconciler or AvailabilityReconciler(
            exclude_unclassified=config.exclude_unclassified
        )
        self._sleep = sleep
        self._stop = threading.Event()

    def request_stop(self) -> None:
        """Stop scheduling new work; in-flight requests finish and are persisted."""
        logger.info("Stop requested; no new batches will be scheduled")
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def run(self, window: TimeWindow, run_id: Optional[str] = None) -> SyncSummary:
        """
        Execute one sync pass over a window.

        Args:
            window: Dates to sync
            run_id: Identifier for the run log (default: random)

        Returns:
            SyncSummary with the terminal status and counters

        Raises:
            ConfigurationError: If the vendor rejects the credentials
        """
        summary = SyncSummary(run_id=run_id or uuid.uuid4().hex, window=window)
        summary.transition(SyncStatus.RUNNING)
        self.storage.save_sync_run(summary)
        start_time = time.time()

        logger.info(
            f"Sync run {summary.run_id} started",
            extra={'window': str(window)}
        )

        try:
            self._run(window, summary)
        except ConfigurationError as e:
            logger.error(f"Sync run {summary.run_id} aborted: {e}")
            summary.record_failure(e)
            self._abort(summary)
            raise
        except Exception:
            self._abort(summary)
            raise

        self.storage.save_sync_run(summary)
        logger.info(
            f"Sync run {summary.run_id} finished with status {summary.status.value}",
            extra={
                'duration_seconds': round(time.time() - start_time, 2),
                'synced': summary.synced,
                'skipped': summary.skipped,
                'failed': summary.failed,
            }
        )
        return summary

    def _abort(self, summary: SyncSummary) -> None:
        if summary.status == SyncStatus.RUNNING:
            summary.transition(SyncStatus.FAILURE)
        self.storage.save_sync_run(summary)

    def _run(self, window: TimeWindow, summary: SyncSummary) -> None:
        self.classifier.reset()
        try:
            types = self.client.list_appointment_types()
        except SchedulingApiError as e:
            logger.error(f"Could not list appointment types: {e}")
            summary.record_failure(e)
            summary.transition(SyncStatus.FAILURE)
            return

        resource_labels = self._resource_labels(summary)
        type_lookup = self._classify_types(types, summary)
        summary.appointment_types = len(types)
        fetch_window = window.month_bounds()

        outcomes: List[TypeOutcome] = []
        pending = list(types)
        for index, batch in enumerate(batched(types, self.config.type_batch_size)):
            if index > 0:
                self._sleep(self.config.batch_delay_seconds)
            if self.stop_requested:
                summary.cancelled = True
                break

            logger.info(
                f"Processing appointment types {index * self.config.type_batch_size + 1}-"
                f"{index * self.config.type_batch_size + len(batch)} of {len(types)}"
            )
            with ThreadPoolExecutor(max_workers=len(batch)) as executor:
                outcomes.extend(executor.map(
                    lambda t: self._sync_type(t, window, fetch_window, resource_labels, summary),
                    batch
                ))
            pending = pending[len(batch):]

        incomplete = IncompleteScopes()
        for outcome in outcomes:
            incomplete.update(outcome.incomplete)
            if outcome.failed:
                summary.types_failed += 1
            else:
                summary.types_succeeded += 1
        for skipped_type in pending:
            incomplete.mark_dates(skipped_type, window.dates())
            incomplete.mark_months(skipped_type, fetch_window.months())

        raw = dedupe_by_id(r for outcome in outcomes for r in outcome.raw_appointments)
        records, dropped = self.processor.process_appointments(
            raw, type_lookup, resource_labels
        )
        for error in dropped:
            summary.record_skip(error)
        summary.appointments_fetched = len(records)

        self._record_upsert(summary, APPOINTMENTS, self.storage.upsert_appointments(records))

        slot_totals = [t for outcome in outcomes for t in outcome.slot_totals]
        reconciliation = self.reconciler.reconcile(
            window, slot_totals, records, incomplete=incomplete
        )
        for error in reconciliation.skipped:
            summary.record_skip(error)
        self._record_upsert(
            summary, SLOT_COUNTS_BY_RESOURCE,
            self.storage.upsert_slot_counts(SLOT_COUNTS_BY_RESOURCE, reconciliation.by_resource)
        )
        self._record_upsert(
            summary, SLOT_COUNTS_BY_GROUP,
            self.storage.upsert_slot_counts(SLOT_COUNTS_BY_GROUP, reconciliation.by_group)
        )

        monthly = count_by_month(
            records,
            exclude_unclassified=self.config.exclude_unclassified,
            incomplete=incomplete
        )
        self._record_upsert(summary, MONTHLY_COUNTS, self.storage.upsert_monthly_counts(monthly))

        summary.transition(self._final_status(summary, outcomes, bool(pending)))

    def _sync_type(
        self,
        appointment_type: AppointmentType,
        window: TimeWindow,
        fetch_window: TimeWindow,
        resource_labels: Dict[str, str],
        summary: SyncSummary
    ) -> TypeOutcome:
        """Fetch appointments and availability for one appointment type."""
        outcome = TypeOutcome(appointment_type=appointment_type)

        canceled_flags = [False, True] if self.config.include_canceled else [False]
        for canceled in canceled_flags:
            filters = AppointmentFilters(type_id=appointment_type.id, canceled=canceled)
            result = self.fetcher.fetch_range(fetch_window, filters)
            outcome.raw_appointments.extend(result.records)
            for error in result.errors:
                summary.record_failure(error)
            for failed_window in result.failed_windows:
                outcome.failed = True
                outcome.incomplete.mark_months(appointment_type, failed_window.months())
                if not canceled:
                    outcome.incomplete.mark_dates(
                        appointment_type,
                        [d for d in failed_window.dates() if window.contains(d)]
                    )

        self._sync_availability(appointment_type, window, resource_labels, summary, outcome)

        logger.info(
            f"Type '{appointment_type.label}' ({appointment_type.id}): "
            f"{len(outcome.raw_appointments)} appointments, "
            f"{len(outcome.slot_totals)} slot totals",
            extra={'type_id': appointment_type.id}
        )
        return outcome

    def _sync_availability(
        self,
        appointment_type: AppointmentType,
        window: TimeWindow,
        resource_labels: Dict[str, str],
        summary: SyncSummary,
        outcome: TypeOutcome
    ) -> None:
        category = appointment_type.category
        dates = window.dates()

        for index, batch in enumerate(batched(dates, self.config.date_batch_size)):
            if index > 0:
                self._sleep(self.config.batch_delay_seconds)
            if self.stop_requested:
                summary.cancelled = True
                remaining = dates[index * self.config.date_batch_size:]
                outcome.incomplete.mark_dates(appointment_type, remaining)
                return

            with ThreadPoolExecutor(max_workers=len(batch)) as executor:
                results = list(executor.map(
                    lambda d: self.fetcher.count_slots(
                        d, appointment_type.id, appointment_type.resource_ids
                    ),
                    batch
                ))

            for day, result in zip(batch, results):
                if result.failed:
                    outcome.failed = True
                    outcome.incomplete.mark_dates(appointment_type, [day])
                    for error in result.errors:
                        summary.record_failure(error)
                    continue
                for resource_id, count in result.totals.items():
                    label = None
                    if resource_id:
                        label = result.labels.get(resource_id) or resource_labels.get(resource_id)
                    outcome.slot_totals.append(SlotTotal(
                        date=day,
                        resource_id=resource_id,
                        resource_label=label,
                        group_label=appointment_type.label,
                        category=category,
                        total_slots=count,
                        category_defaulted=appointment_type.category_defaulted,
                    ))

    def _classify_types(
        self,
        types: List[AppointmentType],
        summary: SyncSummary
    ) -> Dict[str, AppointmentType]:
        """Assign categories and build the pass-scoped type lookup."""
        lookup = {}
        for appointment_type in types:
            category, defaulted = self.classifier.classify_with_flag(
                appointment_type.label,
                appointment_type.category_hint,
                appointment_type.scheduling_link_hint
            )
            appointment_type.category = category
            appointment_type.category_defaulted = defaulted
            if defaulted:
                summary.unclassified_types.append(appointment_type.label or appointment_type.id)
            lookup[appointment_type.id] = appointment_type
            logger.info(
                f"Appointment type '{appointment_type.label}' ({appointment_type.id}) "
                f"-> {category.value}{' (defaulted)' if defaulted else ''}"
            )
        return lookup

    def _resource_labels(self, summary: SyncSummary) -> Dict[str, str]:
        try:
            return {r.id: r.label for r in self.client.list_resources()}
        except SchedulingApiError as e:
            logger.warning(f"Could not list resources; labels will come from records: {e}")
            summary.record_failure(e)
            return {}

    @staticmethod
    def _record_upsert(summary: SyncSummary, table_key: str, result: UpsertResult) -> None:
        summary.record_synced(table_key, result.written)
        for error in result.errors:
            summary.record_failure(error)

    @staticmethod
    def _final_status(
        summary: SyncSummary,
        outcomes: List[TypeOutcome],
        work_left: bool
    ) -> SyncStatus:
        fetched_anything = any(o.raw_appointments or o.slot_totals for o in outcomes)
        if summary.failed and not fetched_anything:
            return SyncStatus.FAILURE
        if summary.failed or work_left or summary.cancelled:
            return SyncStatus.PARTIAL_FAILURE
        return SyncStatus.SUCCESS
