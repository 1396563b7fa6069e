"""Squad engine core: aggregation, morale, guards and the host contract."""

from squad_engine.core.coordinator import SquadCoordinator
from squad_engine.core.session import CombatSession, InMemoryCombatSession, Member
from squad_engine.core.squad_config import SquadConfig

__all__ = [
    "SquadCoordinator",
    "CombatSession",
    "InMemoryCombatSession",
    "Member",
    "SquadConfig",
]
