import json
import logging
import time
from typing import Any, Dict, Optional


class StructuredLogger:
    """
    One JSON line per session event on the ``voice_session.events`` logger.

    Handlers and formatters configured by the application still apply; only
    the message body is structured.
    """

    def __init__(self, name: str = "voice_session.events") -> None:
        self.logger = logging.getLogger(name)

    def _log(self, levelno: int, event_type: str, message: str, session_id: Optional[str], **data: Any) -> None:
        if not self.logger.isEnabledFor(levelno):
            return
        line = {"ts": round(time.time(), 3), "event": event_type, "session": session_id, "msg": message}
        if data:
            line["data"] = data
        self.logger.log(levelno, json.dumps(line, default=str))

    def event(
        self,
        session_id: Optional[str],
        event_type: str,
        message: str,
        level: str = "INFO",
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Generic structured event."""
        self._log(getattr(logging, level.upper(), logging.INFO), event_type, message, session_id, **(data or {}))

    def link_state(self, session_id: Optional[str], old_state: str, new_state: str, trigger: str) -> None:
        self._log(
            logging.INFO, "link_state", f"{old_state} -> {new_state} ({trigger})", session_id,
            old_state=old_state, new_state=new_state, trigger=trigger,
        )

    def transcript(self, session_id: str, text: str, is_final: bool) -> None:
        if is_final:
            self._log(logging.INFO, "transcript_final", text[:100], session_id, chars=len(text))
        else:
            self._log(logging.DEBUG, "transcript_interim", text[:100], session_id, chars=len(text))

    def turn(self, session_id: str, role: str, content: str, history_len: int) -> None:
        """History append."""
        self._log(logging.INFO, "turn_appended", f"{role}: {content[:80]}", session_id, role=role, history_len=history_len)

    def latency_recorded(
        self,
        session_id: Optional[str],
        operation: str,
        duration_ms: float,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._log(
            logging.INFO, "latency", f"{operation} took {duration_ms:.0f}ms", session_id,
            operation=operation, duration_ms=round(duration_ms, 1), **(extra or {}),
        )
