"""
Logging — конфигурация structlog

Все модули получают логгер через structlog.get_logger() и пишут
структурированные события (key/value). Формат — JSON или console.
"""

import logging

import structlog

from src.config import Settings, get_settings


def configure_logging(settings: Settings | None = None) -> None:
    """Конфигурация structlog по настройкам (вызывается один раз при старте)."""
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level, logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
