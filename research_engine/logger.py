"""
Central logging configuration and debug decorator.

All modules log through children of the "research_engine" logger: INFO and
above to the console, everything to the log file. `debug_watcher` wraps the
ingestion and summary entry points and reports what they were called with and
what they produced (sheet outcomes, record counts).
"""

import functools
import logging
import os
import traceback
from pathlib import Path
from time import time
from typing import Any, Callable, TypeVar

F = TypeVar("F", bound=Callable[..., Any])

# Empty string disables the file handler
_DEFAULT_LOG_FILE = Path(__file__).resolve().parent.parent / "research_engine.log"
LOG_FILE = os.environ.get("RESEARCH_ENGINE_LOG_FILE", str(_DEFAULT_LOG_FILE))

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(module)s]: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
PACKAGE_LOGGER = "research_engine"


def _configure(logger: logging.Logger) -> None:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if LOG_FILE:
        file_handler = logging.FileHandler(LOG_FILE, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


_logger = logging.getLogger(PACKAGE_LOGGER)
_logger.setLevel(logging.DEBUG)
if not _logger.handlers:
    _configure(_logger)


def get_logger(name: str | None = None) -> logging.Logger:
    """
    Get a logger for a module.

    Args:
        name: Module name, with or without the package prefix. If None,
            returns the package logger.

    Returns:
        Child logger of "research_engine".
    """
    if not name:
        return _logger
    prefix = f"{PACKAGE_LOGGER}."
    if name.startswith(prefix):
        name = name[len(prefix):]
    return logging.getLogger(prefix + name)


def _describe_arg(value: Any) -> str:
    """Short label for an entry point argument."""
    filename = getattr(value, "filename", None)
    if filename is not None:
        return f"workbook {filename or '<unnamed>'}"
    path = getattr(value, "store_path", None)
    if path is not None:
        return f"store {path}"
    return str(value)[:100]


def _describe_result(result: Any) -> str:
    """Outcome summary for ParseResult-like values and lists of them."""
    if hasattr(result, "ok") and hasattr(result, "sheet"):
        if result.ok:
            return f"{result.sheet}: {len(getattr(result, 'records', []))} records"
        return f"{result.sheet}: failed"
    if isinstance(result, list) and result and all(hasattr(r, "ok") for r in result):
        ok = sum(1 for r in result if r.ok)
        return f"{ok}/{len(result)} sheets ingested"
    return ""


def debug_watcher(func: F) -> F:
    """
    Decorator that logs entry, execution time, outcome and exceptions.

    Exceptions are logged at ERROR with the traceback at DEBUG and re-raised.

    Args:
        func: Function to wrap.

    Returns:
        Wrapped function with logging.
    """
    logger = get_logger(func.__module__)

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        func_name = func.__name__
        start_time = time()

        params = [_describe_arg(a) for a in args[:3]]
        params += [f"{k}={str(v)[:50]}" for k, v in list(kwargs.items())[:3]]
        logger.info(f"Starting {func_name}... ({', '.join(params)})")

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            elapsed = time() - start_time
            logger.error(f"Exception in {func_name} after {elapsed:.3f} seconds: {type(e).__name__}: {e}")
            logger.debug(f"Full traceback for {func_name}:\n{traceback.format_exc()}")
            raise

        elapsed = time() - start_time
        outcome = _describe_result(result)
        suffix = f" ({outcome})" if outcome else ""
        logger.info(f"Completed {func_name} in {elapsed:.3f} seconds{suffix}.")
        return result

    return wrapper  # type: ignore[return-value]
