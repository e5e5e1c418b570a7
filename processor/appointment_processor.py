"""Processor for validating and normalizing raw vendor appointments."""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from processor.classifier import Classifier
from processor.errors import MalformedRecordError, SyncError
from processor.models import (
    AppointmentRecord,
    AppointmentStatus,
    AppointmentType,
)

logger = logging.getLogger(__name__)


PLACEHOLDER_RESOURCE_IDS = {'', '0', 'none', 'null'}


def is_placeholder_resource(resource_id: Optional[str]) -> bool:
    """True when a resource id cannot identify a real resource."""
    return resource_id is None or str(resource_id).strip().lower() in PLACEHOLDER_RESOURCE_IDS


class AppointmentProcessor:
    """Converts raw vendor appointments into AppointmentRecord objects."""

    DATETIME_FORMATS = [
        '%Y-%m-%dT%H:%M:%S%z',   # 2025-07-01T10:00:00-0500
        '%Y-%m-%dT%H:%M:%S.%f%z',
        '%Y-%m-%dT%H:%M:%S',
        '%Y-%m-%dT%H:%M%z',
        '%Y-%m-%dT%H:%M',
        '%Y-%m-%d %H:%M:%S',
    ]

    CLOCK_FORMATS = [
        '%H:%M',         # 24-hour format
        '%H:%M:%S',      # 24-hour with seconds
        '%I:%M%p',       # 12-hour format without space (vendor default)
        '%I:%M %p',      # 12-hour format with AM/PM
    ]

    def __init__(self, classifier: Optional[Classifier] = None):
        self.classifier = classifier or Classifier()

    def process_appointments(
        self,
        raw_appointments: Iterable[Dict[str, Any]],
        type_lookup: Mapping[str, AppointmentType],
        resource_labels: Optional[Mapping[str, str]] = None
    ) -> Tuple[List[AppointmentRecord], List[SyncError]]:
        """
        Validate and normalize raw appointments.

        Args:
            raw_appointments: Raw appointment dicts from the vendor
            type_lookup: Classified appointment types for this pass, by id
            resource_labels: Resource labels for this pass, by id

        Returns:
            Tuple of (records deduplicated by external id, dropped-record errors)
        """
        resource_labels = resource_labels or {}
        records: Dict[str, AppointmentRecord] = {}
        errors: List[SyncError] = []
        total = 0

        for raw in raw_appointments:
            total += 1
            try:
                record = self.process_appointment(raw, type_lookup, resource_labels)
            except MalformedRecordError as e:
                logger.warning(
                    f"Dropping malformed appointment: {e}",
                    extra={'diagnostic': type(e).__name__}
                )
                errors.append(e)
                continue
            records[record.external_id] = record

        logger.info(
            f"Processed {len(records)} valid appointments out of {total} raw records"
        )
        return list(records.values()), errors

    def process_appointment(
        self,
        raw: Dict[str, Any],
        type_lookup: Mapping[str, AppointmentType],
        resource_labels: Mapping[str, str]
    ) -> AppointmentRecord:
        """
        Process a single raw appointment.

        Raises:
            MalformedRecordError: If the id or start time is missing or invalid
        """
        external_id = raw.get('id')
        if external_id is None or str(external_id).strip() == '':
            raise MalformedRecordError("Appointment missing required field: id")
        external_id = str(external_id)

        start_time = self._parse_datetime(raw.get('datetime'))
        if start_time is None:
            raise MalformedRecordError(
                f"Appointment {external_id} has invalid datetime: "
                f"{raw.get('datetime')!r}",
                identifier=external_id
            )
        end_time = self._parse_end_time(raw.get('endTime'), start_time)

        type_id = str(raw.get('appointmentTypeID') or '')
        type_label = raw.get('type') or ''
        appointment_type = type_lookup.get(type_id)
        if appointment_type is not None and appointment_type.category is not None:
            category = appointment_type.category
            defaulted = appointment_type.category_defaulted
            type_label = type_label or appointment_type.label
        else:
            category, defaulted = self.classifier.classify_with_flag(
                type_label, raw.get('category')
            )

        resource_id = raw.get('calendarID')
        resource_id = None if is_placeholder_resource(resource_id) else str(resource_id)
        resource_label = raw.get('calendar') or None
        if resource_label is None and resource_id is not None:
            resource_label = resource_labels.get(resource_id)

        return AppointmentRecord(
            external_id=external_id,
            resource_id=resource_id,
            resource_label=resource_label,
            type_id=type_id,
            type_label=type_label,
            category=category,
            start_time=start_time,
            end_time=end_time,
            status=self._status(raw),
            category_defaulted=defaulted,
        )

    def _status(self, raw: Dict[str, Any]) -> AppointmentStatus:
        if self._truthy(raw.get('canceled')):
            return AppointmentStatus.CANCELED
        if self._truthy(raw.get('rescheduled')):
            return AppointmentStatus.RESCHEDULED
        return AppointmentStatus.SCHEDULED

    @staticmethod
    def _truthy(value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in ('true', '1', 'yes')
        return bool(value)

    def _parse_datetime(self, value: Any) -> Optional[datetime]:
        """
        Parse a vendor timestamp.

        Args:
            value: ISO-like timestamp string, with or without offset

        Returns:
            datetime or None if parsing fails
        """
        if not isinstance(value, str) or not value.strip():
            return None

        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+0000'

        for fmt in self.DATETIME_FORMATS:
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue

        return None

    def _parse_end_time(self, value: Any, start_time: datetime) -> datetime:
        """
        Build the end timestamp.

        The vendor usually sends only a clock time; it is combined with the
        start date. A full timestamp is also accepted. Falls back to the
        start time.
        """
        if not isinstance(value, str) or not value.strip():
            return start_time

        text = value.strip().upper()
        for fmt in self.CLOCK_FORMATS:
            try:
                clock = datetime.strptime(text, fmt)
            except ValueError:
                continue
            return start_time.replace(
                hour=clock.hour, minute=clock.minute, second=clock.second
            )

        parsed = self._parse_datetime(value)
        if parsed is not None:
            return parsed

        logger.warning(f"Could not parse endTime {value!r}; using start time")
        return start_time
