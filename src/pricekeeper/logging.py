"""Structured logging for the price pipeline (structlog over stdlib logging).

Every record carries the exchange and symbol the process serves, bound once
at startup as contextvars. Periodic jobs add ``job=<name>`` on top, so a line
from the historical reconciler reads ``exchange=bybit symbol=BTC/USDT
job=historical ...`` without any call site passing those fields.
"""

import logging
import os

import structlog

# Third-party loggers that are chatty at DEBUG/INFO
_QUIET_LOGGERS: dict[str, int] = {
    "aiosqlite": logging.INFO,  # one line per statement at DEBUG
    "ccxt": logging.WARNING,
    "urllib3": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(
    log_level: str = "INFO",
    *,
    exchange: str | None = None,
    symbol: str | None = None,
) -> None:
    """Route structlog and stdlib logging through one ProcessorFormatter.

    LOG_FORMAT selects "json" (production) or "console" (default).
    ``exchange`` and ``symbol``, when given, are bound for the whole process.
    """
    log_format = os.environ.get("LOG_FORMAT", "console").lower()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format),
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name, level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    bind_pipeline_context(exchange=exchange, symbol=symbol)


def bind_pipeline_context(*, exchange: str | None = None, symbol: str | None = None) -> None:
    """Bind the served market into every subsequent log record."""
    values = {k: v for k, v in {"exchange": exchange, "symbol": symbol}.items() if v}
    if values:
        structlog.contextvars.bind_contextvars(**values)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger with the given name."""
    return structlog.get_logger(name)
