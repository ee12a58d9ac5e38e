import json
import logging
import os
import sys

_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Record attributes passed via ``extra=`` that the JSON format carries
# as top-level fields.
CONTEXT_FIELDS = ("cycle", "window", "fetched", "inserted", "skipped")

_QUIET_LOGGERS = ("urllib3", "charset_normalizer")


class JsonFormatter(logging.Formatter):
    """One JSON object per record: ts, level, logger, msg.

    Sync context given through ``extra=`` (see ``CONTEXT_FIELDS``) is
    copied in when present, and a traceback goes under "exc".
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                entry[field] = getattr(record, field)
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _text_formatter(with_name: bool) -> logging.Formatter:
    name = " %(name)s" if with_name else ""
    return logging.Formatter(
        f"[%(asctime)s] [%(levelname)s]{name} %(message)s", datefmt=_DATEFMT
    )


def resolve_level(debug: bool = False, level: str | None = None) -> int:
    """``debug`` beats ``LOG_LEVEL`` which beats the config *level*.

    Unknown names fall back to INFO.
    """
    if debug:
        return logging.DEBUG
    name = os.getenv("LOG_LEVEL") or level or "INFO"
    resolved = logging.getLevelName(name.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    debug: bool = False,
    log_file: str | None = None,
    debug_format: str = "text",
    level: str | None = None,
) -> None:
    """
    Configure logging for the command-line tool.

    Records go to stderr so stdout stays clean for reports and exported
    snapshots.  With *log_file* they are also appended there, with the
    logger name included.

    Args:
        debug: Force DEBUG regardless of LOG_LEVEL.
        log_file: Optional log file path (appended to).
        debug_format: "text" (default) or "json".
        level: Level name from the config file, used when LOG_LEVEL is unset.
    """
    log_level = resolve_level(debug, level)
    as_json = debug_format == "json"

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(
        JsonFormatter(datefmt=_DATEFMT) if as_json else _text_formatter(False)
    )
    handlers: list[logging.Handler] = [stderr_handler]

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setFormatter(
            JsonFormatter(datefmt=_DATEFMT) if as_json else _text_formatter(True)
        )
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers)

    if log_level != logging.DEBUG:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
