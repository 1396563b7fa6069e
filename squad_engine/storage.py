"""
Shared storage for active encounters.

Keeps the in-memory host sessions, their coordinators and notification
feeds so the API routes can find them by session id.
"""
import logging
from typing import Dict, List, Optional

from squad_engine.core.coordinator import SquadCoordinator
from squad_engine.core.dice import RollService
from squad_engine.core.errors import SessionNotFoundError
from squad_engine.core.notifications import NotificationFeed
from squad_engine.core.session import InMemoryCombatSession, Member
from squad_engine.core.squad_config import SquadConfig

logger = logging.getLogger("squad_engine.storage")

# Keys are session_id (str)
active_sessions: Dict[str, InMemoryCombatSession] = {}
active_coordinators: Dict[str, SquadCoordinator] = {}
notification_feeds: Dict[str, NotificationFeed] = {}


def create_encounter(
    members: Optional[List[Member]] = None,
    config: Optional[SquadConfig] = None,
    roller: Optional[RollService] = None,
    session_id: Optional[str] = None,
) -> SquadCoordinator:
    """Create an encounter with its coordinator attached and register both."""
    session = InMemoryCombatSession(session_id=session_id, members=members)
    feed = NotificationFeed()
    coordinator = SquadCoordinator(
        session,
        roller=roller,
        notifier=feed,
        config=config,
    ).attach()

    active_sessions[session.session_id] = session
    active_coordinators[session.session_id] = coordinator
    notification_feeds[session.session_id] = feed
    logger.info(f"Created encounter {session.session_id} with {len(session.members())} combatants")
    return coordinator


def get_coordinator(session_id: str) -> SquadCoordinator:
    coordinator = active_coordinators.get(session_id)
    if coordinator is None:
        raise SessionNotFoundError(session_id)
    return coordinator


def get_session(session_id: str) -> InMemoryCombatSession:
    session = active_sessions.get(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    return session


def get_feed(session_id: str) -> NotificationFeed:
    feed = notification_feeds.get(session_id)
    if feed is None:
        raise SessionNotFoundError(session_id)
    return feed


def remove_encounter(session_id: str) -> bool:
    """Drop an encounter and detach its coordinator."""
    coordinator = active_coordinators.pop(session_id, None)
    if coordinator is None:
        return False
    coordinator.detach()
    active_sessions.pop(session_id, None)
    notification_feeds.pop(session_id, None)
    logger.info(f"Removed encounter {session_id}")
    return True


def clear_all() -> None:
    for session_id in list(active_coordinators):
        remove_encounter(session_id)
