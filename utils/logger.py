# Loguru configuration for the catalog service.
#
# Every record carries two extras:
#   name        module that logged it (bound by get_logger)
#   request_id  set by RequestIDMiddleware through logger.contextualize,
#               "-" outside a request
#
# Sinks: stdout (text or JSON) and an optional rotating file.

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from loguru import logger as _logger

logger = _logger

_configured = False

_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[request_id]}</magenta> | "
    "<cyan>{extra[name]}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss.SSSZ} {level} [{extra[request_id]}] {extra[name]}:{line} {message}"


def _patch_extras(record) -> None:
    extra = record["extra"]
    extra.setdefault("name", record["name"])
    extra.setdefault("request_id", "-")


def _stdout_sink(level: str, json_logs: bool, colorize: bool) -> Dict[str, Any]:
    sink: Dict[str, Any] = {"sink": sys.stdout, "level": level, "enqueue": True, "backtrace": True}
    if json_logs:
        sink.update(serialize=True, diagnose=False)
    else:
        sink.update(format=_TEXT_FORMAT, colorize=colorize, diagnose=level in ("TRACE", "DEBUG"))
    return sink


def _file_sink(path: Path, level: str, json_logs: bool, rotation: str, retention: str) -> Dict[str, Any]:
    path.parent.mkdir(parents=True, exist_ok=True)
    return {
        "sink": str(path),
        "level": level,
        "format": "{message}" if json_logs else _FILE_FORMAT,
        "serialize": json_logs,
        "rotation": rotation,
        "retention": retention,
        "compression": "zip",
        "encoding": "utf-8",
        "enqueue": True,
        "diagnose": False,
    }


def setup_logger(
    level: str = "INFO",
    file_path: Optional[Union[Path, str]] = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
    json_logs: bool = False,
    colorize: bool = True,
) -> None:
    """
    (Re)configure loguru. Existing sinks are replaced.

    Args:
        level:      Minimum level for every sink.
        file_path:  Rotating log file; None logs to stdout only.
        rotation:   Loguru rotation rule, e.g. "10 MB" or "00:00".
        retention:  How long rotated files are kept.
        json_logs:  Serialise records as JSON (log shippers).
        colorize:   ANSI colours on the stdout sink.
    """
    global _configured

    sinks: List[Dict[str, Any]] = [_stdout_sink(level, json_logs, colorize)]
    if file_path:
        sinks.append(_file_sink(Path(file_path), level, json_logs, rotation, retention))

    _logger.configure(handlers=sinks, patcher=_patch_extras)
    _configured = True
    _logger.debug(
        "Logging configured | level={} | file={} | json={}",
        level,
        file_path or "-",
        json_logs,
    )


def get_logger(name: str):
    """Logger bound to *name*; use ``get_logger(__name__)`` at module level."""
    return _logger.bind(name=name)


def setup_from_settings() -> None:
    """Configure logging from ``settings.logging``."""
    from config.settings import settings  # noqa: PLC0415

    cfg = settings.logging
    setup_logger(
        level=cfg.level,
        file_path=cfg.file_path,
        rotation=cfg.rotation,
        retention=cfg.retention,
        json_logs=cfg.json_logs,
        colorize=not settings.is_production,
    )


if not _configured:
    setup_logger(level="INFO")
