"""loguru setup and structured events.

Structured events are emitted with `log_event(action, **fields)`; the action
names used across the package are ``queue_enqueue``, ``queue_run_start``,
``queue_item_failed``, ``queue_run_done``, ``queue_cancelled``,
``catalog_loaded``, ``catalog_load_failed``, ``repository_created``,
``repository_deleted``, ``folder_added`` and ``metadata_updated``. With a
JSON sink attached each one becomes a line whose ``record.extra`` holds the
action and its fields.
"""
from __future__ import annotations

import sys
import uuid
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

EVENT_FORMAT = "<level>{level: <8}</level> | <green>{time:HH:mm:ss}</green> | <cyan>{message}</cyan>"


def setup_console(level: str = "INFO") -> int:
    logger.remove()
    return logger.add(sys.stderr, level=level.upper(), enqueue=True, backtrace=False, diagnose=False)


def setup_json(path: str, level: str = "DEBUG") -> int:
    return logger.add(path, level=level.upper(), serialize=True, enqueue=True)


def setup_callback_sink(callback: Callable[[str], None], level: str = "INFO") -> int:
    """Route log messages to `callback` (e.g. an event log panel).

    Returns the loguru sink id so the caller can remove it again.
    """
    def callback_sink(msg: "loguru.Message"):
        try:
            callback(str(msg.record.get("message", msg)).rstrip())
        except Exception:
            # a failing panel must not recurse into the logger
            pass

    return logger.add(callback_sink, level=level.upper(), format=EVENT_FORMAT)


def configure(
    level: str = "INFO",
    json_path: Optional[str] = None,
    callback: Optional[Callable[[str], None]] = None,
) -> List[int]:
    """Console sink plus optional JSON lines file and callback sinks; returns sink ids."""
    sinks = [setup_console(level)]
    if json_path:
        sinks.append(setup_json(json_path))
    if callback is not None:
        sinks.append(setup_callback_sink(callback, level))
    return sinks


def bind_run(run_id: Optional[str] = None, **context: Any) -> str:
    """Attach a run id (and any extra context) to every subsequent record."""
    rid = run_id or str(uuid.uuid4())
    logger.configure(extra={"run_id": rid, **{k: v for k, v in context.items() if v is not None}})
    return rid


def get_logger():
    return logger


def log_event(action: str, **fields: Any) -> None:
    # msg and level are reserved; None values are dropped
    clean: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
    msg = clean.pop("msg", action)
    level = clean.pop("level", "INFO").upper()
    logger.bind(action=action, **clean).log(level, msg)


def truncate(text: str, max_len: int = 4096, max_lines: int = 20) -> str:
    """Shorten backend error text for display, keeping the tail."""
    if not text:
        return ""
    lines = text.strip().splitlines()
    if len(lines) > max_lines:
        text = "\n".join(["... (truncated)"] + lines[-max_lines:])
    if len(text) > max_len:
        text = "... (truncated)\n" + text[-max_len:]
    return text
