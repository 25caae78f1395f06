import logging
import logging.config
from typing import Any, Dict, List, MutableMapping, Union

import structlog

SECRET_KEYS = frozenset({"password", "imap_password"})
MASKED_VALUE = "********"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def mask_secrets(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in SECRET_KEYS.intersection(event_dict):
        event_dict[key] = MASKED_VALUE
    return event_dict


def parse_log_level(level: Union[str, int]) -> int:
    if not isinstance(level, str):
        return level
    try:
        return LOG_LEVELS[level.lower()]
    except KeyError:
        raise ValueError(f"invalid log level {level!r}") from None


def _formatter(*processors: Any) -> Dict[str, Any]:
    # Records from stdlib loggers get the same treatment as structlog events.
    foreign_pre_chain = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        mask_secrets,
        structlog.processors.format_exc_info,
    ]
    return {
        "()": structlog.stdlib.ProcessorFormatter,
        "processors": [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *processors,
        ],
        "foreign_pre_chain": foreign_pre_chain,
    }


def _console_formatter(colors: bool) -> Dict[str, Any]:
    return _formatter(
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
        structlog.dev.ConsoleRenderer(colors=colors),
    )


FORMATTERS = {
    "plain": lambda: _console_formatter(colors=False),
    "colored": lambda: _console_formatter(colors=True),
    "json": lambda: _formatter(
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.dict_tracebacks,
        structlog.processors.JSONRenderer(),
    ),
}


def _structlog_processors() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        mask_secrets,
        structlog.dev.set_exc_info,
        structlog.processors.format_exc_info,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]


def configure_logging(overrides: dict, *, debug: bool):
    """Configure structlog and the stdlib logging module.

    ``overrides`` is merged into a :func:`logging.config.dictConfig`
    configuration providing the formatters ``plain``, ``colored``, and
    ``json``. The additional key ``format`` selects the formatter of the
    default handler.
    """
    overrides = dict(overrides)
    log_format = overrides.pop("format", "colored")
    if log_format not in FORMATTERS:
        raise ValueError(f"invalid log format {log_format!r}")

    root = dict(overrides.pop("root", {}))
    log_level = (
        logging.DEBUG if debug else parse_log_level(root.get("level", logging.INFO))
    )
    root["level"] = log_level
    root.setdefault("handlers", ["default"])

    structlog.configure(
        processors=_structlog_processors(),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging_config: Dict[str, Any] = {
        "handlers": {
            "default": {"class": "logging.StreamHandler", "formatter": log_format},
        },
        **overrides,
        "version": 1,
        "incremental": False,
        "formatters": {name: factory() for name, factory in FORMATTERS.items()},
        "root": root,
    }
    logging.config.dictConfig(logging_config)
