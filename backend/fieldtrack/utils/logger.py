import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("fieldtrack")


class SyncActivityLog:
    """Bounded in-memory record of client sync activity.

    The mobile client shows the tail of this log on the sync screen instead of
    raising a dialog per failed row.
    """

    def __init__(self, max_entries: int = 500):
        self.entries = []
        self.max_entries = max_entries

    def record(
        self,
        event_type: str,
        description: str,
        payload: Optional[Dict[str, Any]] = None,
        status: str = "info",
        error: Optional[str] = None
    ):
        entry = {
            "timestamp": datetime.utcnow().isoformat(),
            "event_type": event_type,
            "description": description,
            "payload": self._redact(payload) if payload else None,
            "status": status,
            "error": error
        }

        self.entries.append(entry)

        if len(self.entries) > self.max_entries:
            self.entries.pop(0)

        log_msg = f"[sync] [{event_type}] {description}"
        if error:
            logger.warning(f"{log_msg} - Error: {error}")
        else:
            logger.info(log_msg)

        return entry

    def _redact(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data:
            return {}

        redacted = data.copy()
        sensitive_keys = [
            "token", "pushToken", "password", "authorization", "dataUrl"
        ]

        for key in sensitive_keys:
            if key in redacted:
                value = str(redacted[key])
                if len(value) > 8:
                    redacted[key] = f"{value[:4]}...{value[-4:]}"
                else:
                    redacted[key] = "***"

        return redacted

    def tail(self, limit: Optional[int] = None) -> list:
        if limit:
            return self.entries[-limit:]
        return self.entries

    def errors(self) -> list:
        return [e for e in self.entries if e["status"] == "error"]

    def clear(self):
        self.entries = []
        logger.info("[sync] Cleared sync activity log")
