"""AWS Lambda handler for scheduling data sync."""
import json
import logging
import time
from typing import Dict, Any

from orchestrator.config import SyncConfig, parse_date
from orchestrator.sync_orchestrator import SyncOrchestrator
from processor.errors import ConfigurationError
from processor.models import SyncStatus
from scraper.acuity_client import AcuitySchedulingClient
from storage.dynamodb_manager import DynamoDBManager


# Extra fields copied into JSON log lines when present
LOG_EXTRA_FIELDS = (
    'diagnostic',
    'window',
    'type_id',
    'depth',
    'run_id',
    'duration_seconds',
    'synced',
    'skipped',
    'failed',
    'error_type',
)


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key in LOG_EXTRA_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'body': json.dumps(body, default=str)
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for scheduling data sync.

    The event may override the sync window with ``start_date`` and
    ``end_date`` (ISO dates), and set ``run_id``.

    Args:
        event: EventBridge or manual-trigger payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and the sync summary
    """
    event = event or {}
    start_time = time.time()

    try:
        config = SyncConfig.from_env()
        setup_logging(config.log_level)
        window = config.window(
            start=parse_date(event.get('start_date'), 'start_date'),
            end=parse_date(event.get('end_date'), 'end_date')
        )
    except ConfigurationError as e:
        setup_logging('INFO')
        logging.getLogger(__name__).error(
            f"Invalid configuration: {e}",
            extra={'error_type': type(e).__name__}
        )
        return _response(400, {
            'message': 'Invalid sync configuration',
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(time.time() - start_time, 2)
        })

    logger = logging.getLogger(__name__)
    logger.info(
        "Lambda execution started",
        extra={'window': str(window)}
    )

    client = None
    try:
        client = AcuitySchedulingClient(
            user_id=config.user_id,
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            max_retries=config.max_retries,
            result_cap=config.result_cap
        )
        storage = DynamoDBManager(
            table_prefix=config.table_prefix,
            batch_size=config.upsert_batch_size
        )
        orchestrator = SyncOrchestrator(client, storage, config)

        summary = orchestrator.run(window, run_id=event.get('run_id'))
        duration = time.time() - start_time

        if summary.status == SyncStatus.FAILURE:
            status_code = 500
            message = 'Sync failed'
        elif summary.status == SyncStatus.PARTIAL_FAILURE:
            status_code = 200
            message = 'Sync completed with errors'
        else:
            status_code = 200
            message = 'Sync completed successfully'

        logger.info(
            f"Lambda execution completed: {message}",
            extra={
                'run_id': summary.run_id,
                'duration_seconds': round(duration, 2),
                'synced': summary.synced,
                'skipped': summary.skipped,
                'failed': summary.failed
            }
        )

        return _response(status_code, {
            'message': message,
            'summary': summary.to_dict(),
            'duration_seconds': round(duration, 2)
        })

    except ConfigurationError as e:
        logger.error(
            f"Sync aborted: {e}",
            extra={'error_type': type(e).__name__}
        )
        return _response(400, {
            'message': 'Invalid sync configuration',
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(time.time() - start_time, 2)
        })

    except Exception as e:
        duration = time.time() - start_time

        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )

        return _response(500, {
            'message': 'Sync failed',
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })

    finally:
        if client is not None:
            client.close()
