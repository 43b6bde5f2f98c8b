from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TextIO


class JsonFormatter(logging.Formatter):
    """Render log records as a single-line JSON object.

    Structured context passed as ``extra={"fields": {...}}`` is emitted under
    a ``fields`` key.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 - keep stdlib name
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload["fields"] = fields
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def _build_formatter(*, json_output: bool) -> logging.Formatter:
    if json_output:
        return JsonFormatter()
    return logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")


def _stream_handler(logger: logging.Logger, stream: TextIO) -> logging.StreamHandler:
    for handler in logger.handlers:
        if (
            isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
            and getattr(handler, "stream", None) is stream
        ):
            return handler
    handler = logging.StreamHandler(stream)
    logger.addHandler(handler)
    return handler


def _drop_file_handlers(logger: logging.Logger, *, keep: Path | None = None) -> None:
    for handler in list(logger.handlers):
        if not isinstance(handler, logging.FileHandler):
            continue
        if keep is not None and Path(handler.baseFilename) == keep:
            continue
        logger.removeHandler(handler)
        handler.close()


def configure_logging(
    *,
    level: int = logging.INFO,
    name: str = "ssllaunch",
    json_output: bool = True,
    log_to_file: bool = False,
    file_name: str = "launcher.log",
    stream: TextIO | None = None,
) -> logging.Logger:
    """Configure stdout (and optional file) logging for the launcher.

    Safe to call repeatedly; handlers are reused rather than stacked.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    formatter = _build_formatter(json_output=json_output)

    _stream_handler(logger, sys.stdout if stream is None else stream).setFormatter(formatter)

    if log_to_file:
        file_path = Path(file_name).absolute()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        _drop_file_handlers(logger, keep=file_path)
        file_handler = next(
            (h for h in logger.handlers if isinstance(h, logging.FileHandler)),
            None,
        )
        if file_handler is None:
            # Append: a requeued job keeps the log of its earlier attempts.
            file_handler = logging.FileHandler(file_path, mode="a", encoding="utf-8")
            logger.addHandler(file_handler)
        file_handler.setFormatter(formatter)
    else:
        _drop_file_handlers(logger)

    logger.propagate = False
    return logger
