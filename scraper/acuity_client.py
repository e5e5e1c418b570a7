"""HTTP client for the Acuity Scheduling API."""
import logging
import time
from datetime import date
from typing import Any, Dict, List, Optional

import requests

from processor.errors import (
    ConfigurationError,
    SchedulingApiError,
    TransientApiError,
)
from processor.models import (
    AppointmentFilters,
    AppointmentType,
    AvailableSlot,
    Resource,
    TimeWindow,
)

logger = logging.getLogger(__name__)


class AcuitySchedulingClient:
    """Thin wrapper around the scheduling vendor's REST endpoints."""

    BASE_URL = "https://acuityscheduling.com/api/v1"
    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        user_id: str,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: int = 30,
        max_retries: int = 3,
        base_delay: float = 1.0,
        result_cap: int = 100
    ):
        """
        Initialize the scheduling API client.

        Args:
            user_id: Vendor account user id (basic auth username)
            api_key: Vendor API key (basic auth password)
            base_url: API root (default: public Acuity endpoint)
            timeout: HTTP request timeout in seconds (default: 30)
            max_retries: Attempts per request before giving up (default: 3)
            base_delay: Initial backoff delay in seconds (default: 1.0)
            result_cap: Page size requested from list endpoints (default: 100)
        """
        if not user_id or not api_key:
            raise ConfigurationError("Scheduling API credentials are missing")

        self.base_url = (base_url or self.BASE_URL).rstrip('/')
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.result_cap = result_cap
        self.session = requests.Session()
        self.session.auth = (user_id, api_key)
        self.session.headers.update({'Accept': 'application/json'})

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def list_appointment_types(self) -> List[AppointmentType]:
        """
        Fetch active appointment types.

        Returns:
            List of AppointmentType objects (category not yet assigned)
        """
        payload = self._get('/appointment-types')
        types = []
        for item in payload or []:
            if item.get('active') is False:
                continue
            if item.get('id') is None:
                logger.warning("Skipping appointment type without id")
                continue
            types.append(AppointmentType(
                id=str(item['id']),
                label=item.get('name') or '',
                category_hint=item.get('categoryName') or item.get('category'),
                scheduling_link_hint=item.get('schedulingLink'),
                resource_ids=[str(c) for c in item.get('calendarIDs') or []],
            ))
        logger.info(f"Fetched {len(types)} active appointment types")
        return types

    def list_resources(self) -> List[Resource]:
        """Fetch all resources (calendars)."""
        payload = self._get('/calendars')
        resources = [
            Resource(id=str(item['id']), label=item.get('name') or '')
            for item in payload or []
            if item.get('id') is not None
        ]
        logger.info(f"Fetched {len(resources)} resources")
        return resources

    def list_appointments(
        self,
        window: TimeWindow,
        filters: AppointmentFilters
    ) -> List[Dict[str, Any]]:
        """
        Fetch raw appointments for a window.

        The vendor silently truncates the result at ``result_cap`` records.

        Args:
            window: Inclusive date window
            filters: Resource, type and canceled-flag filters

        Returns:
            List of raw appointment dicts
        """
        params = {
            'minDate': window.start.isoformat(),
            'maxDate': window.end.isoformat(),
            'max': self.result_cap,
        }
        if filters.type_id:
            params['appointmentTypeID'] = filters.type_id
        if filters.resource_id:
            params['calendarID'] = filters.resource_id
        if filters.canceled is not None:
            params['canceled'] = 'true' if filters.canceled else 'false'

        return list(self._get('/appointments', params) or [])

    def list_available_slots(
        self,
        day: date,
        type_id: str,
        resource_id: Optional[str] = None
    ) -> List[AvailableSlot]:
        """
        Fetch available times for a single date.

        Args:
            day: Date to query
            type_id: Appointment type id
            resource_id: Optional resource (calendar) id

        Returns:
            List of AvailableSlot objects
        """
        params = {
            'date': day.isoformat(),
            'appointmentTypeID': type_id,
        }
        if resource_id:
            params['calendarID'] = resource_id

        slots = []
        for item in self._get('/availability/times', params) or []:
            slot_resource = item.get('calendarID') or resource_id
            slots.append(AvailableSlot(
                resource_id=str(slot_resource) if slot_resource else None,
                resource_label=item.get('calendar'),
                time=item.get('time', ''),
            ))
        return slots

    def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Issue a GET request with retry and exponential backoff.

        Raises:
            ConfigurationError: On 401/403
            TransientApiError: If all retry attempts fail on a retryable error
            SchedulingApiError: On any other non-success response
        """
        url = f"{self.base_url}{endpoint}"
        identifier = self._describe(endpoint, params)

        for attempt in range(self.max_retries):
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except requests.RequestException as e:
                error = TransientApiError(
                    f"Request to {endpoint} failed: {e}", identifier=identifier
                )
            else:
                if response.status_code in (401, 403):
                    raise ConfigurationError(
                        f"Scheduling API rejected credentials "
                        f"(status {response.status_code})"
                    )
                if response.status_code in self.RETRYABLE_STATUS_CODES:
                    error = TransientApiError(
                        f"{endpoint} returned status {response.status_code}",
                        identifier=identifier,
                        status_code=response.status_code
                    )
                elif not response.ok:
                    raise SchedulingApiError(
                        f"{endpoint} returned status {response.status_code}: "
                        f"{self._error_message(response)}",
                        identifier=identifier,
                        status_code=response.status_code
                    )
                else:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise SchedulingApiError(
                            f"{endpoint} returned invalid JSON: {e}",
                            identifier=identifier,
                            status_code=response.status_code
                        )

            if attempt < self.max_retries - 1:
                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{self.max_retries}): "
                    f"{error}. Retrying in {delay} seconds..."
                )
                time.sleep(delay)
            else:
                logger.error(
                    f"All {self.max_retries} retry attempts failed. Last error: {error}"
                )
                raise error

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason or ''
        if isinstance(body, dict):
            return body.get('message') or body.get('error') or str(body)
        return str(body)

    @staticmethod
    def _describe(endpoint: str, params: Optional[Dict[str, Any]]) -> str:
        if not params:
            return endpoint
        query = ','.join(f"{k}={v}" for k, v in sorted(params.items()) if k != 'max')
        return f"{endpoint}?{query}"
