"""
Host session contract.

The engine never owns combat data. It reads members and group metadata from
a host session and writes back through one atomic ``commit``. This module
defines that contract and an in-memory host used by the API and the tests.
"""
import copy
import logging
import uuid
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Protocol

from squad_engine.core.dice import DieShape, RollOutcome, RollService, build_formula
from squad_engine.core.errors import GameError, PersistenceError
from squad_engine.core.group_index import UNGROUPED

logger = logging.getLogger("squad_engine.session")


@dataclass
class Member:
    """
    A combatant as seen by the squad engine.

    Attributes:
        id: Unique identifier
        name: Display name
        initiative: Current (possibly encoded) initiative, None until rolled
        dex_mod: DEX modifier, added to initiative rolls and used to rank groups
        dex_score: DEX score, breaks ties inside a group
        hp: Current hit points, None when the host tracks none
        wis_mod: Raw WIS modifier used by morale (may be non-numeric)
        challenge_rating: Raw challenge rating ("1/2", 3, ...)
        group_id: Squad membership
        sort: Secondary list ordering
        status_effects: Active status effect id -> duration in rounds (0 = permanent)
    """
    id: str
    name: str
    initiative: Optional[float] = None
    dex_mod: int = 0
    dex_score: int = 10
    hp: Optional[int] = None
    wis_mod: Any = 0
    challenge_rating: Any = 0
    group_id: str = UNGROUPED
    sort: int = 0
    status_effects: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "initiative": self.initiative,
            "dex_mod": self.dex_mod,
            "dex_score": self.dex_score,
            "hp": self.hp,
            "wis_mod": self.wis_mod,
            "challenge_rating": self.challenge_rating,
            "group_id": self.group_id,
            "sort": self.sort,
            "status_effects": dict(self.status_effects),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Member":
        """Create from dictionary."""
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            name=data["name"],
            initiative=data.get("initiative"),
            dex_mod=data.get("dex_mod", 0),
            dex_score=data.get("dex_score", 10),
            hp=data.get("hp"),
            wis_mod=data.get("wis_mod", 0),
            challenge_rating=data.get("challenge_rating", 0),
            group_id=data.get("group_id") or UNGROUPED,
            sort=data.get("sort", 0),
            status_effects=dict(data.get("status_effects") or {}),
        )


_MEMBER_FIELDS = {f.name for f in fields(Member)} - {"id"}


class SessionListener(Protocol):
    """Receives host notifications; the squad coordinator implements this."""

    async def on_member_created(self, member: Member) -> None:
        ...

    async def on_member_updated(self, member: Member, changes: Dict[str, Any]) -> None:
        ...

    async def on_member_deleted(self, member: Member) -> None:
        ...

    async def on_encounter_started(self) -> None:
        ...

    async def on_encounter_ended(self) -> None:
        ...


class CombatSession(Protocol):
    """What the engine needs from the host encounter record."""

    session_id: str

    def members(self) -> List[Member]:
        ...

    def get_member(self, member_id: str) -> Optional[Member]:
        ...

    def groups(self) -> Dict[str, Dict[str, Any]]:
        ...

    def get_group(self, group_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def commit(
        self,
        member_updates: Optional[Dict[str, Dict[str, Any]]] = None,
        group_updates: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
    ) -> None:
        ...

    async def apply_status_effect(
        self, member_id: str, effect_id: str, duration_rounds: int = 0
    ) -> bool:
        ...


class InMemoryCombatSession:
    """
    Reference host: an encounter held in memory.

    ``commit`` validates everything before touching state, so a rejected
    batch leaves no member or group changed. After applying, every member
    whose fields actually changed is reported to listeners, inline, in
    member order.
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        members: Optional[List[Member]] = None,
        groups: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self._members: Dict[str, Member] = {m.id: m for m in (members or [])}
        self._groups: Dict[str, Dict[str, Any]] = copy.deepcopy(groups or {})
        self._listeners: List[SessionListener] = []
        self.started = False
        self.commit_count = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def members(self) -> List[Member]:
        return list(self._members.values())

    def get_member(self, member_id: str) -> Optional[Member]:
        return self._members.get(member_id)

    def groups(self) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self._groups)

    def get_group(self, group_id: str) -> Optional[Dict[str, Any]]:
        data = self._groups.get(group_id)
        return copy.deepcopy(data) if data is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def subscribe(self, listener: SessionListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def commit(
        self,
        member_updates: Optional[Dict[str, Dict[str, Any]]] = None,
        group_updates: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
    ) -> None:
        """
        Apply member field updates and group metadata updates atomically.

        Args:
            member_updates: member id -> {field: value}
            group_updates: group id -> {field: value} (merged; a None value
                unsets the field) or None to delete the group

        Raises:
            KeyError: Unknown member id or member field; nothing is applied
        """
        member_updates = member_updates or {}
        group_updates = group_updates or {}

        staged: List[tuple] = []
        for member_id, changes in member_updates.items():
            member = self._members.get(member_id)
            if member is None:
                raise KeyError(f"Unknown combatant: {member_id}")
            unknown = set(changes) - _MEMBER_FIELDS
            if unknown:
                raise KeyError(f"Unknown combatant fields: {sorted(unknown)}")
            diff = {k: v for k, v in changes.items() if getattr(member, k) != v}
            staged.append((member, diff))

        for member, diff in staged:
            for key, value in diff.items():
                setattr(member, key, value)

        for group_id, changes in group_updates.items():
            if changes is None:
                self._groups.pop(group_id, None)
                continue
            current = self._groups.setdefault(group_id, {})
            for key, value in changes.items():
                if value is None:
                    current.pop(key, None)
                else:
                    current[key] = value

        self.commit_count += 1

        for member, diff in staged:
            if diff:
                await self._dispatch("on_member_updated", member, diff)

    async def apply_status_effect(
        self, member_id: str, effect_id: str, duration_rounds: int = 0
    ) -> bool:
        """Add a status effect; returns False when it was already active."""
        member = self._members.get(member_id)
        if member is None:
            raise KeyError(f"Unknown combatant: {member_id}")
        if effect_id in member.status_effects:
            return False
        member.status_effects[effect_id] = duration_rounds
        return True

    # ------------------------------------------------------------------
    # Host-side actions (these raise the notifications the engine reacts to)
    # ------------------------------------------------------------------

    async def add_member(self, member: Member) -> Member:
        self._members[member.id] = member
        await self._dispatch("on_member_created", member)
        return member

    async def remove_member(self, member_id: str) -> Optional[Member]:
        member = self._members.pop(member_id, None)
        if member is not None:
            await self._dispatch("on_member_deleted", member)
        return member

    async def set_hp(self, member_id: str, hp: Optional[int]) -> None:
        await self.commit({member_id: {"hp": hp}})

    async def set_initiative(self, member_id: str, initiative: Optional[float]) -> None:
        await self.commit({member_id: {"initiative": initiative}})

    async def start_encounter(self) -> None:
        self.started = True
        await self._dispatch("on_encounter_started")

    async def end_encounter(self) -> None:
        self.started = False
        await self._dispatch("on_encounter_ended")

    async def roll_all(self, roller: RollService, only_missing: bool = True) -> List[RollOutcome]:
        """
        Host "roll everyone": rolls d20 + DEX one combatant at a time.

        Each write is its own commit, so listeners see one notification per
        combatant exactly as they would from a real tracker.
        """
        outcomes = []
        for member in self.members():
            if only_missing and member.initiative is not None:
                continue
            outcome = await roller.evaluate(build_formula(DieShape.SINGLE, member.dex_mod))
            await self.commit({member.id: {"initiative": outcome.total}})
            outcomes.append(outcome)
        return outcomes

    def snapshot(self) -> Dict[str, Any]:
        """Serialise the whole encounter."""
        return {
            "session_id": self.session_id,
            "started": self.started,
            "members": [m.to_dict() for m in self.members()],
            "groups": self.groups(),
        }

    async def _dispatch(self, hook: str, *args: Any) -> None:
        for listener in list(self._listeners):
            await getattr(listener, hook)(*args)


async def commit_or_raise(
    session: CombatSession,
    operation: str,
    member_updates: Optional[Dict[str, Dict[str, Any]]] = None,
    group_updates: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
) -> None:
    """
    Commit through the host, turning a host failure into PersistenceError.

    Engine errors raised by listeners during the commit pass through as-is.
    """
    try:
        await session.commit(member_updates or {}, group_updates or {})
    except GameError:
        raise
    except Exception as e:
        logger.error(f"Failed to {operation}: {e}", exc_info=True)
        raise PersistenceError(operation, str(e)) from e
