import logging
import sys

import structlog
from pythonjsonlogger import jsonlogger


def setup_logging(json_logs: bool = False, level: int = logging.INFO):
    """Structured logging setup shared by the API and scripts"""

    # JSON formatter for the stdlib handler
    json_formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s"
    )

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Setup root logger once
    root = logging.getLogger()
    if not any(getattr(h, "_clinic_scheduler", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(json_formatter)
        handler._clinic_scheduler = True
        root.addHandler(handler)
    root.setLevel(level)

    return structlog.get_logger()
