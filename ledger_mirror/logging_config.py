"""
Logging Infrastructure

Every record is rendered by structlog as one JSON object with the fields
``event``, ``level``, ``module``, ``timestamp`` and ``context``. Records go
to the console, to ``ledger_mirror.log``, and optionally to CloudWatch Logs.
Admission and write outcomes from the indexer and writer are also copied to
``events.log``, which is the pipeline's audit trail.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
from datetime import datetime
import structlog
from structlog.types import EventDict, Processor
import boto3
from botocore.exceptions import ClientError


# Components whose records make up the audit trail
AUDIT_COMPONENTS = ("indexer", "writer")

# (file name, max bytes, backups kept, audit only)
LOG_FILES: Sequence[Tuple[str, int, int, bool]] = (
    ("ledger_mirror.log", 100 * 1024 * 1024, 10, False),
    ("events.log", 100 * 1024 * 1024, 50, True),
)


# ============================================================================
# Processors
# ============================================================================

def add_record_fields(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp module, level and UTC timestamp; guarantee a context mapping"""
    event_dict["module"] = getattr(logger, "name", None)
    event_dict["level"] = method_name.upper()
    event_dict["timestamp"] = datetime.utcnow().isoformat() + "Z"
    event_dict.setdefault("context", {})
    return event_dict


class AuditFilter(logging.Filter):
    """Pass only records emitted by the pipeline components"""

    def __init__(self, components: Sequence[str] = AUDIT_COMPONENTS):
        super().__init__()
        self.components = tuple(components)

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name.lower()
        return any(component in name for component in self.components)


# ============================================================================
# CloudWatch Handler
# ============================================================================

class CloudWatchHandler(logging.Handler):
    """
    Ships formatted records to a CloudWatch Logs stream.

    Records are buffered and sent with one ``put_log_events`` call once
    either ``batch_size`` records or ``MAX_BATCH_BYTES`` of payload have
    accumulated. If the client cannot be created the handler disables itself
    and drops records; the indexer never blocks on log shipping.
    """

    MAX_BATCH_BYTES = 1_048_576
    EVENT_OVERHEAD_BYTES = 26

    def __init__(
        self,
        log_group: str,
        log_stream: str,
        region: str = "us-east-1",
        batch_size: int = 100,
        retention_days: int = 30
    ):
        super().__init__()
        self.log_group = log_group
        self.log_stream = log_stream
        self.batch_size = batch_size
        self.sequence_token: Optional[str] = None
        self.batch: List[Dict[str, Any]] = []
        self._batch_bytes = 0

        try:
            self.client = boto3.client('logs', region_name=region)
            self._create_if_missing(self.client.create_log_group, logGroupName=log_group)
            self.client.put_retention_policy(logGroupName=log_group, retentionInDays=retention_days)
            self._create_if_missing(self.client.create_log_stream, logGroupName=log_group, logStreamName=log_stream)
            self.enabled = True
        except Exception as e:
            print(f"CloudWatch logging disabled for {log_group}/{log_stream}: {e}", file=sys.stderr)
            self.enabled = False

    @staticmethod
    def _create_if_missing(create, **kwargs):
        try:
            create(**kwargs)
        except ClientError as e:
            if e.response['Error']['Code'] != 'ResourceAlreadyExistsException':
                raise

    def emit(self, record: logging.LogRecord):
        if not self.enabled:
            return

        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return

        size = len(message.encode('utf-8')) + self.EVENT_OVERHEAD_BYTES
        if self.batch and self._batch_bytes + size > self.MAX_BATCH_BYTES:
            self.flush()

        self.batch.append({'timestamp': int(record.created * 1000), 'message': message})
        self._batch_bytes += size

        if len(self.batch) >= self.batch_size:
            self.flush()

    def flush(self):
        """Send the buffered records; the batch is cleared even if the call fails"""
        if not self.enabled or not self.batch:
            return

        batch = sorted(self.batch, key=lambda event: event['timestamp'])
        self.batch = []
        self._batch_bytes = 0

        request = {'logGroupName': self.log_group, 'logStreamName': self.log_stream, 'logEvents': batch}
        if self.sequence_token:
            request['sequenceToken'] = self.sequence_token

        try:
            response = self.client.put_log_events(**request)
            self.sequence_token = response.get('nextSequenceToken')
        except Exception as e:
            print(f"CloudWatch dropped {len(batch)} records: {e}", file=sys.stderr)

    def close(self):
        self.flush()
        super().close()


# ============================================================================
# Setup
# ============================================================================

class LoggingConfig:
    """
    Process-wide logging setup.

    Replaces any handlers already on the root logger, so calling it again
    (tests do, once per log directory) starts from a clean slate.
    """

    def __init__(
        self,
        log_dir: Path = Path("logs"),
        log_level: str = "INFO",
        enable_cloudwatch: bool = False,
        cloudwatch_region: str = "us-east-1",
        cloudwatch_log_group: str = "LedgerMirror",
        cloudwatch_log_stream: Optional[str] = None
    ):
        self.log_dir = Path(log_dir)
        self.log_level = log_level.upper()
        # Loggers pass INFO through so the audit file sees outcomes at any service level
        self.capture_level = min(logging.getLevelName(self.log_level), logging.INFO)
        self.cloudwatch: Optional[CloudWatchHandler] = None

        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=self._processors(),
            wrapper_class=structlog.make_filtering_bound_logger(self.capture_level),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=False,
        )

        handlers = [self._console_handler()] + [self._file_handler(*entry) for entry in LOG_FILES]
        if enable_cloudwatch:
            stream = cloudwatch_log_stream or f"indexer-{datetime.utcnow():%Y%m%d-%H%M%S}"
            self.cloudwatch = CloudWatchHandler(cloudwatch_log_group, stream, region=cloudwatch_region)
            self.cloudwatch.setLevel(max(logging.getLevelName(self.log_level), logging.INFO))
            handlers.append(self.cloudwatch)

        self._install(handlers)

    @staticmethod
    def _processors() -> List[Processor]:
        return [
            structlog.contextvars.merge_contextvars,
            add_record_fields,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(default=str),
        ]

    def _console_handler(self) -> logging.Handler:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(self.log_level)
        return handler

    def _file_handler(self, filename: str, max_bytes: int, backups: int, audit_only: bool) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            filename=self.log_dir / filename,
            maxBytes=max_bytes,
            backupCount=backups,
            encoding='utf-8'
        )
        if audit_only:
            handler.setLevel(logging.INFO)
            handler.addFilter(AuditFilter())
        else:
            handler.setLevel(self.log_level)
        return handler

    def _install(self, handlers: List[logging.Handler]):
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

        root.setLevel(self.capture_level)
        for handler in handlers:
            # Messages arrive already rendered as JSON
            handler.setFormatter(logging.Formatter('%(message)s'))
            root.addHandler(handler)

    def get_logger(self, name: str) -> structlog.stdlib.BoundLogger:
        return structlog.get_logger(name)


_logging_config: Optional[LoggingConfig] = None


def init_logging(
    log_dir: Path = Path("logs"),
    log_level: str = "INFO",
    enable_cloudwatch: bool = False,
    cloudwatch_region: str = "us-east-1",
    cloudwatch_log_group: str = "LedgerMirror",
    cloudwatch_log_stream: Optional[str] = None
) -> LoggingConfig:
    """
    Configure logging for the process.

    Args:
        log_dir: Directory for ledger_mirror.log and events.log
        log_level: Minimum level for the console and main log file
        enable_cloudwatch: Also ship records to CloudWatch Logs
        cloudwatch_region: AWS region for CloudWatch
        cloudwatch_log_group: CloudWatch log group name
        cloudwatch_log_stream: Stream name, timestamped if omitted
    """
    global _logging_config
    _logging_config = LoggingConfig(
        log_dir=log_dir,
        log_level=log_level,
        enable_cloudwatch=enable_cloudwatch,
        cloudwatch_region=cloudwatch_region,
        cloudwatch_log_group=cloudwatch_log_group,
        cloudwatch_log_stream=cloudwatch_log_stream
    )
    return _logging_config


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger for a component; configures defaults on first use"""
    if _logging_config is None:
        init_logging()
    return _logging_config.get_logger(name)


# ============================================================================
# Structured Records
# ============================================================================

def log_event_admission(
    logger: structlog.stdlib.BoundLogger,
    result: str,
    tx_hash: str,
    block_number: int,
    stream: str
):
    """
    Log a gate admission outcome.

    Duplicates and stale replays are normal idempotency outcomes and are
    logged at debug level.
    """
    context = {
        "event_type": "event_admission",
        "result": result,
        "tx_hash": tx_hash,
        "block_number": block_number,
        "stream": stream
    }
    if result == "ADMIT":
        logger.info("event_admitted", context=context)
    else:
        logger.debug("event_suppressed", context=context)


def log_write_result(
    logger: structlog.stdlib.BoundLogger,
    tx_hash: str,
    status: str,
    event_type: str,
    block_number: int,
    activities: int = 0,
    error: Optional[str] = None
):
    """Log the outcome of one transactional write"""
    logger.info(
        "event_written",
        context={
            "event_type": "event_written",
            "tx_hash": tx_hash,
            "status": status,
            "ledger_event": event_type,
            "block_number": block_number,
            "activities": activities,
            "error": error
        }
    )


def log_fallback(
    logger: structlog.stdlib.BoundLogger,
    field: str,
    user: str,
    market: str,
    provenance: str,
    error: str
):
    """Log a reconciled field that fell back to a non-authoritative value"""
    logger.warning(
        "reconcile_fallback",
        context={
            "event_type": "reconcile_fallback",
            "field": field,
            "user": user,
            "market": market,
            "provenance": provenance,
            "error": error
        }
    )


def log_invariant_violation(
    logger: structlog.stdlib.BoundLogger,
    reason: str,
    category: str,
    context: Optional[Dict[str, Any]] = None
):
    """Log an action rejected with a reason code"""
    logger.warning(
        "invariant_violation",
        context={
            "event_type": "invariant_violation",
            "reason": reason,
            "category": category,
            **(context or {})
        }
    )


def log_scan_summary(
    logger: structlog.stdlib.BoundLogger,
    market: str,
    discovered: int,
    failed: int,
    candidates: int,
    duration_ms: float
):
    """Log the summary of one liquidation scan"""
    logger.info(
        "liquidation_scan",
        context={
            "event_type": "liquidation_scan",
            "market": market,
            "discovered": discovered,
            "failed": failed,
            "candidates": candidates,
            "duration_ms": round(duration_ms, 1)
        }
    )


def log_performance_metrics(
    logger: structlog.stdlib.BoundLogger,
    metrics: Dict[str, Any]
):
    """Log performance metrics"""
    logger.info(
        "performance_metrics",
        context={
            "event_type": "performance_metrics",
            "metrics": metrics
        }
    )
