"""
Structured Logging Utilities

Centralises logging setup for the artifact tool pipeline: a terse console
handler for operators plus an optional rotating JSONL file that keeps the
structured ``extra`` fields (stage, tool URL, artifact, attempt) for audit.
Secrets that may leak through tool URLs (tokens in query strings) are masked
before records are serialised.
"""

from __future__ import annotations

import gzip
import json
import logging
import sys
import uuid
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .settings import LOGGER_NAME, LoggingConfiguration

_SENSITIVE_KEYS = {"authorization", "api_key", "apikey", "token", "secret", "password"}
_STANDARD_RECORD_FIELDS = set(vars(logging.makeLogRecord({})))
_MANAGED_FLAG = "_velotools_managed"


def _mask_url(value: str) -> str:
    parts = urlsplit(value)
    if not parts.query:
        return value
    pairs = [
        (key, "***masked***" if key.lower() in _SENSITIVE_KEYS else item)
        for key, item in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(pairs, safe="*")))


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Remove secrets from structured payloads prior to logging.

    Examples:
        >>> mask_sensitive_data({"token": "secret", "status": "ok"})
        {'token': '***masked***', 'status': 'ok'}
    """
    masked: Dict[str, object] = {}
    for key, value in payload.items():
        if key.lower() in _SENSITIVE_KEYS:
            masked[key] = "***masked***"
        elif isinstance(value, str) and value.startswith(("http://", "https://")):
            masked[key] = _mask_url(value)
        else:
            masked[key] = value
    return masked


def generate_correlation_id() -> str:
    """Return a twelve character identifier linking the log records of one run."""
    return uuid.uuid4().hex[:12]


class JSONFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record.

    Every non-standard attribute attached through ``extra=`` is carried over,
    so ``logger.info("fetched", extra={"stage": "download", "tool_url": url})``
    yields ``{"stage": "download", "tool_url": ...}`` in the output line.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, object] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key in _STANDARD_RECORD_FIELDS or key.startswith("_") or key in log_obj:
                continue
            log_obj[key] = value
        if record.exc_info:
            log_obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(log_obj), default=str)


def _compress_old_log(path: Path) -> None:
    compressed_path = path.with_suffix(path.suffix + ".gz")
    with path.open("rb") as source, gzip.open(compressed_path, "wb") as target:
        target.write(source.read())
    path.unlink(missing_ok=True)


def _cleanup_logs(log_dir: Path, retention_days: int) -> None:
    """Compress expired ``.jsonl`` files and delete expired archives."""
    now = datetime.now(timezone.utc)
    retention_delta = timedelta(days=retention_days)
    for file in log_dir.glob("*.jsonl"):
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        if now - mtime > retention_delta:
            _compress_old_log(file)
    for file in log_dir.glob("*.jsonl.gz"):
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        if now - mtime > retention_delta:
            file.unlink(missing_ok=True)


def setup_logging(
    config: Optional[LoggingConfiguration] = None,
    *,
    level: Optional[str] = None,
    stream=None,
) -> logging.Logger:
    """Configure console and JSONL handlers on the package logger.

    Calling this repeatedly replaces the handlers it installed earlier rather
    than stacking duplicates, so tests and the CLI can reconfigure freely.

    Args:
        config: Logging configuration; defaults are used when omitted.
        level: Optional level overriding ``config.level`` (CLI ``-v`` flags).
        stream: Console stream, ``sys.stderr`` by default.

    Returns:
        The ``VeloKit.ArtifactTools`` logger.
    """
    config = config or LoggingConfiguration()
    logger = logging.getLogger(LOGGER_NAME)
    effective = (level or config.level).upper()
    logger.setLevel(getattr(logging, effective, logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, _MANAGED_FLAG, False):
            logger.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler(stream or sys.stderr)
    console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    setattr(console, _MANAGED_FLAG, True)
    logger.addHandler(console)

    if config.directory is not None:
        log_dir = Path(config.directory).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        _cleanup_logs(log_dir, config.retention_days)
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            log_dir / f"velotools-{today}.jsonl",
            maxBytes=int(config.max_log_size_mb * 1024 * 1024),
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONFormatter())
        setattr(file_handler, _MANAGED_FLAG, True)
        logger.addHandler(file_handler)

    logger.propagate = True
    return logger


__all__ = ["JSONFormatter", "generate_correlation_id", "mask_sensitive_data", "setup_logging"]
