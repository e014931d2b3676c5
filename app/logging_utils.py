# file: app/logging_utils.py
from datetime import datetime, timezone


def log_event(agent: str, message: str, type: str = "agent_log", payload: dict = None, level: str = "info") -> dict:
    """Create a run log entry"""
    return {
        "ts": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "type": type,
        "agent": agent,
        "message": message,
        "payload": payload or {}
    }
