from __future__ import annotations
import sys
import uuid
from typing import Optional, Any, Dict
from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | "
    "<dim>{extra[run_id]:.8}</dim> | <cyan>{message}</cyan>"
)

_configured = False

# Records logged outside a sync session still need the field for the format
logger.configure(extra={"run_id": "-"})


def configure_logging(log_level: str = "INFO", log_json_path: Optional[str] = None) -> None:
    """Replace loguru's default sink with a stderr console sink.

    When `log_json_path` is set, every record (DEBUG and up) is also
    serialized to that file as one JSON object per line.
    """
    global _configured
    logger.remove()
    logger.add(
        sys.stderr,
        level=log_level.upper(),
        format=CONSOLE_FORMAT,
        enqueue=True,
        backtrace=False,
        diagnose=False,
    )
    if log_json_path:
        logger.add(log_json_path, level="DEBUG", serialize=True, enqueue=True)
    _configured = True


def is_configured() -> bool:
    return _configured


def bind_run(run_id: Optional[str] = None) -> str:
    """Tag all subsequent records with a sync session id."""
    rid = run_id or uuid.uuid4().hex
    logger.configure(extra={"run_id": rid})
    return rid


def log_event(action: str, **fields: Any) -> None:
    # None fields are dropped; `msg` and `level` are consumed here
    clean: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
    msg = clean.pop("msg", action)
    level = clean.pop("level", "INFO").upper()
    logger.bind(action=action, **clean).log(level, msg)


def truncate(text: str, max_len: int = 4096, max_lines: int = 20) -> str:
    """Shorten error text for logs and summaries, keeping the tail."""
    if not text:
        return ""
    lines = text.strip().splitlines()
    if len(lines) > max_lines:
        text = "\n".join(["... (truncated)"] + lines[-max_lines:])
    if len(text) > max_len:
        text = "... (truncated)\n" + text[-max_len:]
    return text
