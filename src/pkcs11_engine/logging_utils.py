"""
Rotating file logging for the engine.

Every module logs through a child of the ``pkcs11_engine`` logger:

- ``pkcs11_engine.uri``: parsed URI fields and ignored attributes (DEBUG).
- ``pkcs11_engine.pin``: which PIN source was used (DEBUG).
- ``pkcs11_engine.locator``: module load, release and reinitialization
  (INFO), slot matching (DEBUG).
- ``pkcs11_engine.session``: session open and close (INFO), rejected
  logins (ERROR).
- ``pkcs11_engine.search``: search templates and progress (DEBUG), token
  errors (ERROR).
- ``pkcs11_engine.store``: store close (DEBUG).
- ``pkcs11_engine.token_key``: signatures produced (INFO).
- ``pkcs11_engine.engine``: loaded keys, certificates and client
  certificate choices (INFO).

PIN values never reach the log. The URI trace leaves out pin-value, and
``Secret`` redacts itself in repr.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

DEFAULT_LOG_FILE = "logs/pkcs11-engine.log"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 5

LOGGER_NAMESPACE = "pkcs11_engine"


def _parse_int(value: str, name: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {value}") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be >= 0, got: {value}")
    return parsed


def _resolve_level(level: str | int) -> int:
    if not isinstance(level, str):
        return int(level)
    normalized = level.strip().upper()
    if normalized.isdigit():
        return int(normalized)
    numeric_level = getattr(logging, normalized, None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")
    return numeric_level


def configure_logging(
    *,
    log_file: str | Path | None = None,
    level: str | int | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
) -> logging.Logger:
    """
    Configure rotating file logging for the pkcs11_engine logger namespace.

    Environment variable overrides:
    - PKCS11_ENGINE_LOG_FILE
    - PKCS11_ENGINE_LOG_LEVEL
    - PKCS11_ENGINE_LOG_MAX_BYTES
    - PKCS11_ENGINE_LOG_BACKUP_COUNT

    Engine traces (URI decisions, slot matching, search progress) are emitted
    at DEBUG level. PINs are never written to the log.
    """

    resolved_log_file = Path(
        str(log_file or os.environ.get("PKCS11_ENGINE_LOG_FILE", DEFAULT_LOG_FILE))
    )
    numeric_level = _resolve_level(
        level or os.environ.get("PKCS11_ENGINE_LOG_LEVEL", DEFAULT_LOG_LEVEL)
    )

    if max_bytes is None:
        max_bytes = _parse_int(
            os.environ.get("PKCS11_ENGINE_LOG_MAX_BYTES", str(DEFAULT_LOG_MAX_BYTES)),
            "PKCS11_ENGINE_LOG_MAX_BYTES",
        )
    if backup_count is None:
        backup_count = _parse_int(
            os.environ.get(
                "PKCS11_ENGINE_LOG_BACKUP_COUNT", str(DEFAULT_LOG_BACKUP_COUNT)
            ),
            "PKCS11_ENGINE_LOG_BACKUP_COUNT",
        )
    if max_bytes < 0:
        raise ValueError("max_bytes must be >= 0.")
    if backup_count < 0:
        raise ValueError("backup_count must be >= 0.")

    resolved_log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAMESPACE)
    logger.setLevel(numeric_level)
    logger.propagate = False

    resolved_path = resolved_log_file.resolve()
    for existing in logger.handlers:
        if (
            isinstance(existing, RotatingFileHandler)
            and Path(existing.baseFilename).resolve() == resolved_path
        ):
            existing.setLevel(numeric_level)
            return logger

    handler = RotatingFileHandler(
        resolved_log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(numeric_level)
    handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )
    logger.addHandler(handler)

    logger.info(
        "Configured rotating file logging (path=%s, level=%s, max_bytes=%d, backup_count=%d)",
        resolved_log_file,
        logging.getLevelName(numeric_level),
        max_bytes,
        backup_count,
    )
    return logger
