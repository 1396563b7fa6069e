"""
Squad Coordinator.

One coordinator per encounter. It owns the guard layer, the initiative
aggregator, the morale manager and the bulk-roll interceptor, receives the
host's member notifications, and exposes every squad operation.

Privileged operations (anything a GM does explicitly) check ``authority``
before touching state and raise PermissionDeniedError otherwise. Reactions
to host notifications run only for a privileged caller and skip quietly
for everyone else, so only one client ever writes derived state.
"""
import functools
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional

from squad_engine.core.aggregation import AggregationResult, InitiativeAggregator, decode_rolls
from squad_engine.core.bulk_roll import BulkRollInterceptor
from squad_engine.core.dice import DiceRoller, RollMode, RollService
from squad_engine.core.errors import (
    GroupNotFoundError,
    MemberNotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from squad_engine.core.group_index import (
    UNGROUPED,
    Discipline,
    GroupEntry,
    GroupMeta,
    build_group_index,
    generate_group_id,
    group_members,
)
from squad_engine.core.guards import GuardLayer
from squad_engine.core.morale import (
    MoraleManager,
    MoraleResult,
    PromptTracker,
    casualty_count,
    mob_confidence,
)
from squad_engine.core.notifications import LoggingNotifier, Notifier
from squad_engine.core.numeric import format_modifier, is_finite_number, rounded_average
from squad_engine.core.session import CombatSession, Member, commit_or_raise
from squad_engine.core.squad_config import SquadConfig

logger = logging.getLogger("squad_engine.coordinator")

UPDATABLE_GROUP_FIELDS = {
    "name", "pinned", "hidden", "color", "img", "discipline", "mob_confidence_divisor",
}

_CLEARED_AGGREGATE = {
    "initiative": None,
    "initiative_override": False,
    "rank": None,
    "standing_total": None,
    "standing_dex": None,
    "rolls": None,
}


class SquadCoordinator:
    """Squad state for one encounter."""

    # Pure helpers, re-exported for collaborators
    rounded_average = staticmethod(rounded_average)
    mob_confidence = staticmethod(mob_confidence)
    casualty_count = staticmethod(casualty_count)
    format_modifier = staticmethod(format_modifier)

    def __init__(
        self,
        session: CombatSession,
        roller: Optional[RollService] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[SquadConfig] = None,
        authority: Optional[Callable[[], bool]] = None,
    ):
        self.session = session
        self.roller = roller or DiceRoller()
        self.notifier = notifier or LoggingNotifier()
        self.config = config or SquadConfig()
        self.authority = authority or (lambda: True)

        self.guards = GuardLayer()
        self.prompts = PromptTracker()
        self.aggregator = InitiativeAggregator(session, self.guards, self.roller, self.notifier)
        self.morale = MoraleManager(session, self.roller, self.config, self.notifier, self.prompts)
        self.bulk = BulkRollInterceptor(
            session,
            self.guards,
            self.aggregator.finalize,
            settle_delay=self.config.settle_delay_seconds,
        )

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach(self) -> "SquadCoordinator":
        """Start receiving the host session's notifications."""
        self.session.subscribe(self)
        return self

    def detach(self) -> None:
        self.session.unsubscribe(self)
        self.prompts.clear()
        self.bulk.processing.clear()

    def _require_privilege(self, operation: str) -> None:
        if not self.authority():
            logger.warning(f"Permission denied: {operation}")
            raise PermissionDeniedError(operation)

    def _require_group(self, group_id: str) -> None:
        if group_id == UNGROUPED:
            raise ValidationError("group_id", "Ungrouped combatants do not form a group", value=group_id)
        if self.session.get_group(group_id) is None and not group_members(self.session.members(), group_id):
            raise GroupNotFoundError(group_id)

    def require_member(self, member_id: str) -> Member:
        member = self.session.get_member(member_id)
        if member is None:
            raise MemberNotFoundError(member_id)
        return member

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def group_index(self) -> "OrderedDict[str, GroupEntry]":
        return build_group_index(self.session.members(), self.session.groups())

    def get_group(self, group_id: str) -> GroupMeta:
        data = self.session.get_group(group_id)
        if data is None:
            raise GroupNotFoundError(group_id)
        return GroupMeta.from_dict(data)

    def status(self) -> Dict[str, Any]:
        return {
            "session_id": self.session.session_id,
            "guards": self.guards.status(),
            "prompted_groups": list(self.prompts),
            "finalize_count": self.aggregator.finalize_count,
            "config": self.config.to_dict(),
        }

    # ------------------------------------------------------------------
    # Initiative
    # ------------------------------------------------------------------

    async def finalize(self, group_id: str) -> Optional[AggregationResult]:
        self._require_privilege("finalize group initiative")
        self._require_group(group_id)
        return await self.aggregator.finalize(group_id)

    async def roll_and_finalize(self, group_id: str, mode: Any = RollMode.NORMAL) -> Optional[AggregationResult]:
        self._require_privilege("roll group initiative")
        try:
            mode = RollMode(mode)
        except ValueError:
            raise ValidationError("mode", "Must be normal, advantage or disadvantage", value=mode)
        self._require_group(group_id)
        return await self.aggregator.roll_and_finalize(group_id, mode)

    async def set_group_initiative(self, group_id: str, value: float) -> Optional[Dict[str, Any]]:
        self._require_privilege("set group initiative")
        self._require_group(group_id)
        return await self.aggregator.set_group_initiative(group_id, value)

    async def reset_group_initiative(self, group_id: str) -> Optional[int]:
        self._require_privilege("reset group initiative")
        self._require_group(group_id)
        return await self.aggregator.reset_group_initiative(group_id)

    async def roll_all(self, operation: Optional[Callable[[], Any]] = None) -> Any:
        """
        Run a host bulk roll, then finalize each group once.

        Defaults to the in-memory host's own "roll everyone".
        """
        self._require_privilege("roll initiative for everyone")
        if operation is None:
            operation = functools.partial(self.session.roll_all, self.roller)
        return await self.bulk.run(operation)

    # ------------------------------------------------------------------
    # Group management
    # ------------------------------------------------------------------

    async def create_group(
        self,
        name: str,
        member_ids: Iterable[str] = (),
        img: Optional[str] = None,
        color: Optional[str] = None,
        hidden: bool = False,
        pinned: Optional[bool] = None,
        discipline: Any = Discipline.STANDARD,
    ) -> str:
        """Create a group, optionally moving members into it. Returns the new id."""
        self._require_privilege("create groups")
        if not name or not str(name).strip():
            raise ValidationError("name", "Group name cannot be empty", value=name)
        discipline = self._parse_discipline(discipline)
        member_ids = list(dict.fromkeys(member_ids))
        for member_id in member_ids:
            self.require_member(member_id)

        group_id = generate_group_id()
        meta = GroupMeta(
            name=str(name).strip(),
            pinned=self.config.default_group_pinned if pinned is None else pinned,
            hidden=hidden,
            discipline=discipline,
        )
        if img:
            meta.img = img
        if color:
            meta.color = color

        await self._move_members(member_ids, group_id, {group_id: meta.to_dict()})
        logger.info(f"Created group {meta.name} ({group_id}) with {len(member_ids)} members")
        return group_id

    async def update_group(self, group_id: str, **changes: Any) -> GroupMeta:
        self._require_privilege("edit groups")
        if self.session.get_group(group_id) is None:
            raise GroupNotFoundError(group_id)

        unknown = set(changes) - UPDATABLE_GROUP_FIELDS
        if unknown:
            raise ValidationError("fields", f"Cannot update {', '.join(sorted(unknown))}", value=sorted(unknown))

        updates = dict(changes)
        if "name" in updates:
            if not updates["name"] or not str(updates["name"]).strip():
                raise ValidationError("name", "Group name cannot be empty", value=updates["name"])
            updates["name"] = str(updates["name"]).strip()
        if "discipline" in updates:
            updates["discipline"] = self._parse_discipline(updates["discipline"]).value
        if "mob_confidence_divisor" in updates:
            divisor = updates["mob_confidence_divisor"]
            if divisor is not None and (isinstance(divisor, bool) or not isinstance(divisor, int) or divisor < 1):
                raise ValidationError("mob_confidence_divisor", "Must be an integer of at least 1", value=divisor)

        await commit_or_raise(self.session, f"update group {group_id}", group_updates={group_id: updates})
        return self.get_group(group_id)

    async def assign_member(self, member_id: str, group_id: str) -> Optional[AggregationResult]:
        """Move a member into a group, re-slotting the group if it already has initiative."""
        self._require_privilege("assign combatants to groups")
        if group_id == UNGROUPED:
            await self.unassign_member(member_id)
            return None
        self.require_member(member_id)
        if self.session.get_group(group_id) is None:
            raise GroupNotFoundError(group_id)
        return await self._move_members([member_id], group_id)

    async def unassign_member(self, member_id: str) -> None:
        self._require_privilege("remove combatants from groups")
        self.require_member(member_id)
        await self._move_members([member_id], UNGROUPED)

    async def delete_group(self, group_id: str) -> int:
        """Delete a group; its members become ungrouped. Returns how many were unassigned."""
        self._require_privilege("delete groups")
        if self.session.get_group(group_id) is None:
            raise GroupNotFoundError(group_id)

        members = group_members(self.session.members(), group_id)
        rolls = decode_rolls(GroupMeta.from_dict(self.session.get_group(group_id)), members)
        member_updates = {m.id: {"group_id": UNGROUPED, "initiative": rolls[m.id]} for m in members}
        await commit_or_raise(
            self.session,
            f"delete group {group_id}",
            member_updates=member_updates,
            group_updates={group_id: None},
        )
        self.prompts.reset(group_id)
        self.guards.forget_group(group_id)
        logger.info(f"Deleted group {group_id}; {len(members)} combatants ungrouped")
        return len(members)

    async def _move_members(
        self,
        member_ids: List[str],
        target: str,
        group_updates: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
    ) -> Optional[AggregationResult]:
        group_updates = dict(group_updates or {})
        members = self.session.members()
        moving = set(member_ids)
        member_updates: Dict[str, Dict[str, Any]] = {mid: {"group_id": target} for mid in member_ids}

        for old_group in {m.group_id for m in members if m.id in moving}:
            if old_group in (UNGROUPED, target):
                continue
            old_meta = GroupMeta.from_dict(self.session.get_group(old_group))
            # Leavers take their roll with them, not the old group's encoding
            for member_id, roll in decode_rolls(old_meta, group_members(members, old_group)).items():
                if member_id in moving and roll is not None:
                    member_updates[member_id]["initiative"] = roll

            # Groups left empty lose their aggregate
            remaining = [m for m in group_members(members, old_group) if m.id not in moving]
            if not remaining and self.session.get_group(old_group) is not None:
                group_updates[old_group] = dict(_CLEARED_AGGREGATE)

        with self.guards.group_skip(target):
            await commit_or_raise(
                self.session,
                f"move combatants to {target}",
                member_updates=member_updates,
                group_updates=group_updates,
            )

        if target == UNGROUPED:
            return None
        meta = GroupMeta.from_dict(self.session.get_group(target))
        newcomers_rolled = any(
            is_finite_number(m.initiative) for m in self.session.members() if m.id in moving
        )
        if is_finite_number(meta.initiative) and newcomers_rolled:
            return await self.aggregator.finalize(target)
        return None

    @staticmethod
    def _parse_discipline(value: Any) -> Discipline:
        try:
            return Discipline(value)
        except ValueError:
            raise ValidationError(
                "discipline", f"Must be one of {', '.join(d.value for d in Discipline)}", value=value
            )

    # ------------------------------------------------------------------
    # Morale
    # ------------------------------------------------------------------

    async def roll_morale(self, group_id: str) -> Optional[MoraleResult]:
        self._require_privilege("roll morale")
        self._require_group(group_id)
        return await self.morale.roll_morale(group_id)

    def should_auto_prompt(self, group_id: str) -> bool:
        return self.morale.should_auto_prompt(group_id)

    async def record_starting_size(self, group_id: str) -> Optional[int]:
        self._require_privilege("record starting sizes")
        self._require_group(group_id)
        return await self.morale.record_starting_size(group_id)

    async def record_starting_sizes(self) -> Dict[str, int]:
        self._require_privilege("record starting sizes")
        return await self.morale.record_starting_sizes()

    async def send_auto_prompt(self, group_id: str) -> bool:
        self._require_privilege("send morale prompts")
        self._require_group(group_id)
        return await self.morale.send_auto_prompt(group_id)

    async def reset_prompt_for_group(self, group_id: str) -> None:
        self._require_privilege("reset morale prompts")
        await self.morale.reset_prompt_for_group(group_id)

    async def clear_prompts(self) -> None:
        self._require_privilege("clear morale prompts")
        await self.morale.clear_prompts()

    # ------------------------------------------------------------------
    # Host notifications
    # ------------------------------------------------------------------

    async def on_member_created(self, member: Member) -> None:
        if member.group_id:
            return
        if not self.authority():
            return
        await commit_or_raise(
            self.session,
            f"assign {member.name} to {UNGROUPED}",
            member_updates={member.id: {"group_id": UNGROUPED}},
        )

    async def on_member_updated(self, member: Member, changes: Dict[str, Any]) -> None:
        if not self.authority():
            return

        decision = self.guards.check_initiative_reaction(member, changes)
        if decision.proceed:
            # The host's write has already landed; a failed re-slot must not fail it
            try:
                await self.aggregator.finalize(member.group_id)
            except Exception as e:
                logger.error(f"Finalize of {member.group_id} after {member.name} rolled failed: {e}", exc_info=True)

        if "hp" in changes:
            await self._check_morale_prompt(member.group_id)

    async def on_member_deleted(self, member: Member) -> None:
        if not self.authority():
            return
        group_id = member.group_id
        if not group_id or group_id == UNGROUPED:
            return
        await self.morale.record_deletion(group_id)
        await self._check_morale_prompt(group_id)

    async def on_encounter_started(self) -> None:
        if not self.authority():
            return
        await self.morale.record_starting_sizes()

    async def on_encounter_ended(self) -> None:
        if not self.authority():
            return
        await self.morale.clear_prompts()

    async def _check_morale_prompt(self, group_id: Optional[str]) -> None:
        if not self.config.morale_enabled or not group_id or group_id == UNGROUPED:
            return
        if self.morale.should_auto_prompt(group_id):
            await self.morale.send_auto_prompt(group_id)
