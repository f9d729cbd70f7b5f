import json
import logging
import os

from colorama import Fore, Style
from colorama import init as colorama_init

# Early .env load so DISABLE_CLOUD_TELEMETRY is known before touching OTel
from dotenv import load_dotenv

if os.path.isfile(".env"):
    load_dotenv(override=False)

_telemetry_disabled = os.getenv("DISABLE_CLOUD_TELEMETRY", "false").lower() == "true"

if not _telemetry_disabled:
    from opentelemetry import trace
else:
    trace = None

colorama_init(autoreset=True)

# Define a new logging level named "KEYINFO" with a level of 25
KEYINFO_LEVEL_NUM = 25
logging.addLevelName(KEYINFO_LEVEL_NUM, "KEYINFO")


def keyinfo(self: logging.Logger, message, *args, **kws):
    if self.isEnabledFor(KEYINFO_LEVEL_NUM):
        self._log(KEYINFO_LEVEL_NUM, message, args, **kws)


logging.Logger.keyinfo = keyinfo

_CORRELATION_FIELDS = ("channel_id", "conversation_id", "account_id", "operation_name")


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "name": record.name,
            "process": record.processName,
            "level": record.levelname,
            "trace_id": getattr(record, "trace_id", "-"),
            "span_id": getattr(record, "span_id", "-"),
            "message": record.getMessage(),
            "file": record.filename,
            "function": record.funcName,
            "line": record.lineno,
        }
        for field_name in _CORRELATION_FIELDS:
            log_record[field_name] = getattr(record, field_name, "-")

        # Extra routing attributes set through routing_context(**extra)
        for attr_name in dir(record):
            if attr_name.startswith(("routing_", "participant_")):
                log_record[attr_name] = getattr(record, attr_name)

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record, default=str)


class PrettyFormatter(logging.Formatter):
    LEVEL_COLORS = {
        "DEBUG": Fore.CYAN,
        "INFO": Fore.GREEN,
        "WARNING": Fore.YELLOW,
        "ERROR": Fore.RED,
        "CRITICAL": Fore.MAGENTA,
        "KEYINFO": Fore.BLUE,
    }

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, self.datefmt)
        level = record.levelname
        color = self.LEVEL_COLORS.get(level, "")
        conversation = getattr(record, "conversation_id", "-")
        prefix = f"[{conversation[-8:]}] " if conversation and conversation != "-" else ""
        return (
            f"{Fore.WHITE}[{timestamp}]{Style.RESET_ALL} {color}{level}{Style.RESET_ALL} - "
            f"{Fore.BLUE}{record.name}{Style.RESET_ALL}: {prefix}{record.getMessage()}"
        )


class TraceLogFilter(logging.Filter):
    """
    Enriches log records with trace ids and routing correlation.

    Correlation comes from the routing context (contextvars) set by the
    engine around each operation; trace/span ids come from the current
    OpenTelemetry span when telemetry is enabled.
    """

    def filter(self, record):
        if _telemetry_disabled or trace is None:
            record.trace_id = "-"
            record.span_id = "-"
        else:
            span = trace.get_current_span()
            context = span.get_span_context() if span else None
            record.trace_id = f"{context.trace_id:032x}" if context and context.trace_id else "-"
            record.span_id = f"{context.span_id:016x}" if context and context.span_id else "-"

        from utils.routing_context import get_routing_correlation

        correlation = get_routing_correlation()
        if correlation:
            for key, value in correlation.to_log_record().items():
                setattr(record, key, value)
        else:
            for field_name in _CORRELATION_FIELDS:
                setattr(record, field_name, "-")

        return True


def get_logger(
    name: str = "handoff",
    level: int | None = None,
    include_stream_handler: bool = True,
) -> logging.Logger:
    """
    Get or create a logger with routing correlation.

    Args:
        name: Logger name (hierarchical, e.g., "handoff_router.engine")
        level: Optional logging level; defaults to INFO if logger has no level set
        include_stream_handler: Whether to add a console StreamHandler

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if level is not None or logger.level == 0:
        logger.setLevel(level or logging.INFO)

    is_production = os.environ.get("ENV", "dev").lower() == "prod"

    if not any(isinstance(f, TraceLogFilter) for f in logger.filters):
        logger.addFilter(TraceLogFilter())

    if include_stream_handler and not any(
        isinstance(h, logging.StreamHandler) for h in logger.handlers
    ):
        sh = logging.StreamHandler()
        sh.setFormatter(JsonFormatter() if is_production else PrettyFormatter())
        sh.addFilter(TraceLogFilter())
        logger.addHandler(sh)

    return logger
