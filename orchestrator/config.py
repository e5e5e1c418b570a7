"""Sync configuration read from environment variables."""
import os
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Mapping, Optional

from processor.errors import ConfigurationError
from processor.models import Category, TimeWindow


TRUE_VALUES = ('1', 'true', 'yes', 'on')


@dataclass
class SyncConfig:
    """Settings for one sync run."""
    user_id: str
    api_key: str
    base_url: str = "https://acuityscheduling.com/api/v1"
    table_prefix: str = 'scheduling-sync'
    log_level: str = 'INFO'
    timeout_seconds: int = 30
    max_retries: int = 3
    days_back: int = 0
    days_ahead: int = 90
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    result_cap: int = 100
    type_batch_size: int = 5
    date_batch_size: int = 5
    max_concurrent_requests: int = 5
    batch_delay_seconds: float = 1.0
    upsert_batch_size: int = 200
    default_category: Category = Category.FITTING
    exclude_unclassified: bool = False
    include_canceled: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'SyncConfig':
        """
        Build a config from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Raises:
            ConfigurationError: If credentials are missing or a value is invalid
        """
        env = os.environ if environ is None else environ

        user_id = env.get('ACUITY_USER_ID', '').strip()
        api_key = env.get('ACUITY_API_KEY', '').strip()
        if not user_id or not api_key:
            raise ConfigurationError(
                "ACUITY_USER_ID and ACUITY_API_KEY must be set"
            )

        config = cls(
            user_id=user_id,
            api_key=api_key,
            base_url=env.get('ACUITY_BASE_URL', cls.base_url),
            table_prefix=env.get('TABLE_PREFIX', cls.table_prefix),
            log_level=env.get('LOG_LEVEL', cls.log_level),
            timeout_seconds=_int(env, 'TIMEOUT_SECONDS', cls.timeout_seconds),
            max_retries=_int(env, 'MAX_RETRIES', cls.max_retries),
            days_back=_int(env, 'DAYS_BACK', cls.days_back),
            days_ahead=_int(env, 'DAYS_AHEAD', cls.days_ahead),
            start_date=_date(env.get('SYNC_START_DATE'), 'SYNC_START_DATE'),
            end_date=_date(env.get('SYNC_END_DATE'), 'SYNC_END_DATE'),
            result_cap=_int(env, 'RESULT_CAP', cls.result_cap),
            type_batch_size=_int(env, 'TYPE_BATCH_SIZE', cls.type_batch_size),
            date_batch_size=_int(env, 'DATE_BATCH_SIZE', cls.date_batch_size),
            max_concurrent_requests=_int(
                env, 'MAX_CONCURRENT_REQUESTS', cls.max_concurrent_requests
            ),
            batch_delay_seconds=_float(
                env, 'BATCH_DELAY_SECONDS', cls.batch_delay_seconds
            ),
            upsert_batch_size=_int(env, 'UPSERT_BATCH_SIZE', cls.upsert_batch_size),
            default_category=_category(env.get('DEFAULT_CATEGORY')),
            exclude_unclassified=_bool(env, 'EXCLUDE_UNCLASSIFIED', False),
            include_canceled=_bool(env, 'INCLUDE_CANCELED', True),
        )
        config.validate()
        return config

    def validate(self) -> None:
        positive = {
            'RESULT_CAP': self.result_cap,
            'TYPE_BATCH_SIZE': self.type_batch_size,
            'DATE_BATCH_SIZE': self.date_batch_size,
            'MAX_CONCURRENT_REQUESTS': self.max_concurrent_requests,
            'UPSERT_BATCH_SIZE': self.upsert_batch_size,
            'TIMEOUT_SECONDS': self.timeout_seconds,
            'MAX_RETRIES': self.max_retries,
        }
        for name, value in positive.items():
            if value < 1:
                raise ConfigurationError(f"{name} must be at least 1, got {value}")
        if self.days_back < 0 or self.days_ahead < 0:
            raise ConfigurationError("DAYS_BACK and DAYS_AHEAD must not be negative")
        if self.batch_delay_seconds < 0:
            raise ConfigurationError("BATCH_DELAY_SECONDS must not be negative")
        # Raises on an inverted window.
        self.window()

    def window(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        today: Optional[date] = None
    ) -> TimeWindow:
        """
        Resolve the sync window.

        Explicit arguments win over SYNC_START_DATE/SYNC_END_DATE, which win
        over DAYS_BACK/DAYS_AHEAD relative to today.

        Raises:
            ConfigurationError: If start is after end
        """
        today = today or date.today()
        start = start or self.start_date or today - timedelta(days=self.days_back)
        end = end or self.end_date or today + timedelta(days=self.days_ahead)
        try:
            return TimeWindow(start, end)
        except ValueError as e:
            raise ConfigurationError(f"Invalid sync window: {e}")

    def table_name(self, table_key: str) -> str:
        return f"{self.table_prefix}-{table_key}"


def parse_date(value: Optional[str], name: str) -> Optional[date]:
    """Parse an ISO date, raising ConfigurationError on bad input."""
    return _date(value, name)


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    return raw.strip().lower() in TRUE_VALUES


def _date(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be an ISO date, got {value!r}")


def _category(value: Optional[str]) -> Category:
    if not value:
        return Category.FITTING
    try:
        return Category(value.strip().lower())
    except ValueError:
        raise ConfigurationError(
            f"DEFAULT_CATEGORY must be one of "
            f"{', '.join(c.value for c in Category)}, got {value!r}"
        )
