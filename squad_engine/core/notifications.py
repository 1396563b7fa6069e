"""
Notification surface.

The engine reports what it did (group initiative breakdowns, morale results,
auto-prompts) through an injected notifier. A host routes these to its chat
log; the API keeps them in a feed.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger("squad_engine.notifications")

# Notification kinds
INITIATIVE_SUMMARY = "initiative_summary"
INITIATIVE_ROLL = "initiative_roll"
MORALE_RESULT = "morale_result"
MORALE_FEARLESS = "morale_fearless"
MORALE_PROMPT = "morale_prompt"
MORALE_INFO = "morale_info"


class Notifier(Protocol):
    async def publish(self, kind: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Writes every notification to the log. Default when no host notifier is given."""

    async def publish(self, kind: str, payload: Dict[str, Any]) -> None:
        logger.info(f"[{kind}] {payload.get('message') or payload}")


class NotificationFeed:
    """
    Keeps published notifications in memory, newest last.

    Used by the HTTP surface so a client can poll what the engine reported.
    """

    def __init__(self, max_entries: int = 200):
        self.max_entries = max_entries
        self.entries: List[Dict[str, Any]] = []

    async def publish(self, kind: str, payload: Dict[str, Any]) -> None:
        self.entries.append({
            "kind": kind,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        if len(self.entries) > self.max_entries:
            del self.entries[: len(self.entries) - self.max_entries]

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [e for e in self.entries if e["kind"] == kind]

    def since(self, index: int = 0) -> List[Dict[str, Any]]:
        return self.entries[index:]

    def clear(self) -> None:
        self.entries.clear()


async def safe_publish(notifier: Optional[Notifier], kind: str, payload: Dict[str, Any]) -> bool:
    """
    Publish without letting a notifier failure escape.

    Notifications are reported after state has been committed; a failing
    notifier is logged and the committed state stands.
    """
    if notifier is None:
        return False
    try:
        await notifier.publish(kind, payload)
        return True
    except Exception as e:
        logger.warning(f"Failed to publish {kind} notification: {e}")
        return False
