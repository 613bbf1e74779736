# logs.py
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

# attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED = set(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


def _extras(record: logging.LogRecord) -> dict:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED}


class TextFormatter(logging.Formatter):
    """[ts] LEVEL logger: message key=value ..."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"[{ts}] {record.levelname} {record.name}: {record.getMessage()}"
        extras = _extras(record)
        if extras:
            line += " " + " ".join(f"{k}={v}" for k, v in extras.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_extras(record))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(fmt: str = "text", debug: bool = False) -> logging.Logger:
    """
    Install a stderr handler on the `cipack` logger.

    Calling it again replaces the previous handler, so the CLI can be
    invoked repeatedly in one process (tests).
    """
    if fmt not in ("text", "json"):
        raise ValueError(f"Unknown log format {fmt!r} (expected 'text' or 'json')")

    logger = logging.getLogger("cipack")
    for h in list(logger.handlers):
        if getattr(h, "_cipack", False):
            logger.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if fmt == "json" else TextFormatter())
    handler._cipack = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    # json logs are meant for machines, so they carry the info events too
    if debug:
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO if fmt == "json" else logging.WARNING)
    logger.propagate = False
    return logger
