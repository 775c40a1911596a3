# utils/logging_utils.py
import os
import sys
import logging
from typing import Optional
from pathlib import Path

from loguru import logger as _logger


# --- project-root detection and path helpers ---
def _find_project_root(start_path: Optional[str] = None) -> Path:
    """
    Locate the project root by searching upward for common markers.
    Falls back to cwd if nothing found.
    """
    start = Path(start_path or Path(__file__).resolve()).resolve()
    candidates = [start] + list(start.parents)
    markers = (".git", "pyproject.toml")
    for parent in candidates:
        for marker in markers:
            if (parent / marker).exists():
                return parent
    return Path.cwd()


PROJECT_ROOT = _find_project_root()


def _relpath(path: str) -> str:
    """
    Path relative to the project root, or a compact 'dir/file.py' when the
    file lives outside it.
    """
    p = Path(path).resolve()
    try:
        rel = p.relative_to(PROJECT_ROOT)
    except ValueError:
        parts = p.parts
        return os.path.join(parts[-2], parts[-1]) if len(parts) >= 2 else p.name
    parts = rel.parts
    if len(parts) <= 3:
        return str(rel)
    # keep only last 3 parts if very deep
    return os.path.join(*parts[-3:])


class InterceptHandler(logging.Handler):
    """
    Logging handler that forwards stdlib logging (torch, PIL, ...) to loguru.
    """
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        _logger.opt(exception=record.exc_info, depth=6).log(level, record.getMessage())


def _inject_relpath(record: dict) -> bool:
    """Loguru filter: adds record['extra']['path'] with a readable path string."""
    f = record.get("file")
    fpath = getattr(f, "path", None)
    record["extra"]["path"] = _relpath(fpath) if fpath else "<unknown>"
    return True


def init_logger(
    debug: bool = False,
    log_dir: Optional[str] = None,
    log_level: str = "INFO",
    rotation: str = "50 MB",
    retention: str = "14 days",
    compression: Optional[str] = "zip",
):
    """
    Initialize loguru sinks.

    Args:
        debug: enable backtrace/diagnose (richer tracebacks)
        log_dir: if given, a rotating run.log is written there
        log_level: minimum level (DEBUG/INFO/...)
        rotation/retention/compression: file-sink params for loguru

    Returns:
        the configured loguru logger
    """
    # remove existing sinks so repeated init is idempotent
    _logger.remove()

    _logger.level("DEBUG", color="<blue>")
    _logger.level("INFO", color="<white>")

    console_fmt = (
        "<green>{time:HH:mm:ss}</green> | "
        "<level>{level: <7}</level> | "
        "<cyan>{file.name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )
    _logger.add(
        sys.stderr,
        level=log_level,
        backtrace=debug,
        diagnose=debug,
        format=console_fmt,
    )

    log_file = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_file = os.path.join(log_dir, "run.log")
        file_fmt = (
            "{time:YYYY-MM-DD HH:mm:ss} | {level: <7} | "
            "{extra[path]}:{function}:{line} - {message}"
        )
        _logger.add(
            log_file,
            level=log_level,
            enqueue=True,
            rotation=rotation,
            retention=retention,
            compression=compression,
            backtrace=debug,
            diagnose=debug,
            format=file_fmt,
            filter=_inject_relpath,
        )

    # route stdlib logging into loguru
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    _logger.info("Loguru initialized. Log file: {}", log_file or "<console only>")
    return _logger
