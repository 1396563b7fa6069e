"""
Morale System.

When a squad takes enough casualties its surviving members test their nerve:

- DC = 10 + casualties (dead members plus members removed from the encounter)
- Each living member rolls d20 + WIS + floor(CR) + mob confidence
- Mob confidence = floor(living members / divisor)
- Discipline picks the die: Expendable rolls with disadvantage, Elite with
  advantage, Fearless never rolls
- A failed check applies the configured status effect (frightened or fleeing)

Auto-prompts tell the GM when a group has dropped to the configured share of
its starting size; each group is prompted once per encounter.
"""
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from squad_engine.core.dice import DieShape, RollService, build_formula
from squad_engine.core.group_index import (
    UNGROUPED,
    Discipline,
    GroupMeta,
    build_group_index,
    group_members,
)
from squad_engine.core.notifications import (
    MORALE_FEARLESS,
    MORALE_INFO,
    MORALE_PROMPT,
    MORALE_RESULT,
    Notifier,
    safe_publish,
)
from squad_engine.core.numeric import coerce_number, format_modifier, is_finite_number
from squad_engine.core.session import CombatSession, Member, commit_or_raise
from squad_engine.core.squad_config import SquadConfig

logger = logging.getLogger("squad_engine.morale")

BASE_MORALE_DC = 10


class MoraleEffect(str, Enum):
    """Status effects a broken member can receive."""
    FRIGHTENED = "frightened"
    FLEEING = "fleeing"


DISCIPLINE_DICE = {
    Discipline.EXPENDABLE: DieShape.KEEP_LOWEST,
    Discipline.STANDARD: DieShape.SINGLE,
    Discipline.ELITE: DieShape.KEEP_HIGHEST,
}


def is_living(member: Member) -> bool:
    return is_finite_number(member.hp) and member.hp > 0


def is_dead(member: Member) -> bool:
    return is_finite_number(member.hp) and member.hp <= 0


def mob_confidence(living_count: int, divisor: int) -> int:
    """Morale bonus for strength in numbers: +1 per ``divisor`` living members."""
    if divisor < 1:
        raise ValueError(f"Mob confidence divisor must be at least 1, got {divisor}")
    return max(0, living_count) // divisor


def casualty_count(members: Iterable[Member], deleted_count: int = 0) -> int:
    """Dead members plus members already removed from the encounter."""
    return sum(1 for m in members if is_dead(m)) + (deleted_count or 0)


def morale_dc(casualties: int) -> int:
    return BASE_MORALE_DC + casualties


class PromptTracker:
    """Groups already prompted for morale in the current encounter."""

    def __init__(self):
        self._prompted: Set[str] = set()

    def mark(self, group_id: str) -> None:
        self._prompted.add(group_id)

    def is_prompted(self, group_id: str) -> bool:
        return group_id in self._prompted

    def reset(self, group_id: str) -> None:
        self._prompted.discard(group_id)

    def clear(self) -> None:
        self._prompted.clear()

    def __len__(self) -> int:
        return len(self._prompted)

    def __iter__(self):
        return iter(sorted(self._prompted))


@dataclass
class MoraleEntry:
    """One living member's check."""
    member_id: str
    name: str
    roll_total: int
    natural: Optional[int]
    wis_mod: float
    cr: int
    mob_confidence: int
    total_mod: int
    passed: bool
    coerced: List[str] = field(default_factory=list)
    effect_applied: Optional[bool] = None  # None when no effect was due

    def to_dict(self) -> Dict[str, Any]:
        return {
            "member_id": self.member_id,
            "name": self.name,
            "roll_total": self.roll_total,
            "natural": self.natural,
            "wis_mod": self.wis_mod,
            "cr": self.cr,
            "mob_confidence": self.mob_confidence,
            "total_mod": self.total_mod,
            "passed": self.passed,
            "coerced": list(self.coerced),
            "effect_applied": self.effect_applied,
        }


@dataclass
class MoraleResult:
    """Outcome of a group morale check."""
    group_id: str
    group_name: str
    discipline: Discipline
    skipped: bool = False
    reason: Optional[str] = None
    dc: Optional[int] = None
    casualties: int = 0
    mob_confidence: int = 0
    divisor: Optional[int] = None
    living_count: int = 0
    die: Optional[str] = None
    effect: Optional[str] = None
    held: List[MoraleEntry] = field(default_factory=list)
    broke: List[MoraleEntry] = field(default_factory=list)

    @property
    def discipline_label(self) -> str:
        return self.discipline.label

    @property
    def entries(self) -> List[MoraleEntry]:
        return self.held + self.broke

    @property
    def message(self) -> str:
        if self.skipped:
            return f"{self.group_name} is {self.discipline_label} and ignores morale"
        return (
            f"{self.group_name} morale DC {self.dc} "
            f"(casualties {format_modifier(self.casualties)}, mob {format_modifier(self.mob_confidence)}): "
            f"{len(self.held)} held, {len(self.broke)} broke"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "group_name": self.group_name,
            "discipline": self.discipline.value,
            "discipline_label": self.discipline_label,
            "skipped": self.skipped,
            "reason": self.reason,
            "dc": self.dc,
            "casualties": self.casualties,
            "mob_confidence": self.mob_confidence,
            "divisor": self.divisor,
            "living_count": self.living_count,
            "die": self.die,
            "effect": self.effect,
            "held": [e.to_dict() for e in self.held],
            "broke": [e.to_dict() for e in self.broke],
            "message": self.message,
        }


class MoraleManager:
    """Runs morale checks and auto-prompts for one encounter."""

    def __init__(
        self,
        session: CombatSession,
        roller: RollService,
        config: SquadConfig,
        notifier: Optional[Notifier] = None,
        prompts: Optional[PromptTracker] = None,
    ):
        self.session = session
        self.roller = roller
        self.config = config
        self.notifier = notifier
        self.prompts = prompts if prompts is not None else PromptTracker()

    def _meta(self, group_id: str) -> GroupMeta:
        return GroupMeta.from_dict(self.session.get_group(group_id))

    def _divisor(self, meta: GroupMeta) -> int:
        override = meta.mob_confidence_divisor
        if isinstance(override, int) and not isinstance(override, bool) and override >= 1:
            return override
        return self.config.mob_confidence_divisor

    # ------------------------------------------------------------------
    # Starting sizes
    # ------------------------------------------------------------------

    async def record_starting_size(self, group_id: str) -> Optional[int]:
        """Snapshot the group's member count once; later calls do nothing."""
        if self._meta(group_id).starting_size is not None:
            return None
        size = len(group_members(self.session.members(), group_id))
        if not size:
            logger.debug(f"Starting size for {group_id} not recorded: no members")
            return None
        await commit_or_raise(
            self.session,
            f"record starting size for {group_id}",
            group_updates={group_id: {"starting_size": size}},
        )
        logger.info(f"Recorded starting size {size} for group {group_id}")
        return size

    async def record_starting_sizes(self) -> Dict[str, int]:
        """Record starting sizes for every group that lacks one, in one commit."""
        stored = self.session.groups()
        index = build_group_index(self.session.members(), stored)
        recorded = {}
        for group_id, entry in index.items():
            if group_id == UNGROUPED or not entry.members:
                continue
            if GroupMeta.from_dict(stored.get(group_id)).starting_size is not None:
                continue
            recorded[group_id] = len(entry.members)

        if recorded:
            await commit_or_raise(
                self.session,
                "record starting sizes",
                group_updates={gid: {"starting_size": size} for gid, size in recorded.items()},
            )
            logger.info(f"Recorded starting sizes for {len(recorded)} groups")
        return recorded

    # ------------------------------------------------------------------
    # Auto-prompts
    # ------------------------------------------------------------------

    def should_auto_prompt(self, group_id: str) -> bool:
        threshold = self.config.morale_auto_prompt_threshold
        if threshold == 0:
            return False
        if self.prompts.is_prompted(group_id):
            return False
        starting = self._meta(group_id).starting_size
        if not starting:
            return False
        living = sum(1 for m in group_members(self.session.members(), group_id) if is_living(m))
        return living <= math.floor(starting * threshold / 100)

    async def send_auto_prompt(self, group_id: str) -> bool:
        """Prompt the GM to roll morale for a group. Returns False if already prompted."""
        if self.prompts.is_prompted(group_id):
            return False
        self.prompts.mark(group_id)

        meta = self._meta(group_id)
        living = sum(1 for m in group_members(self.session.members(), group_id) if is_living(m))
        await self._persist_prompted(group_id, True)
        await safe_publish(self.notifier, MORALE_PROMPT, {
            "group_id": group_id,
            "group_name": meta.name,
            "living": living,
            "starting_size": meta.starting_size,
            "message": f"{meta.name} is down to {living} of {meta.starting_size}. Roll morale?",
        })
        logger.info(f"Morale prompt sent for {meta.name} ({living}/{meta.starting_size})")
        return True

    async def reset_prompt_for_group(self, group_id: str) -> None:
        self.prompts.reset(group_id)
        if self._meta(group_id).auto_prompted:
            await self._persist_prompted(group_id, False)

    async def clear_prompts(self) -> None:
        """Forget every prompt; called when the encounter ends."""
        self.prompts.clear()
        marked = [gid for gid, data in self.session.groups().items() if (data or {}).get("auto_prompted")]
        if marked:
            await commit_or_raise(
                self.session,
                "clear morale prompts",
                group_updates={gid: {"auto_prompted": False} for gid in marked},
            )

    async def _persist_prompted(self, group_id: str, prompted: bool) -> None:
        if self.session.get_group(group_id) is None:
            return
        await commit_or_raise(
            self.session,
            f"mark morale prompt for {group_id}",
            group_updates={group_id: {"auto_prompted": prompted}},
        )

    async def record_deletion(self, group_id: str) -> int:
        """Count a member removed from the encounter as a casualty."""
        meta = self._meta(group_id)
        count = meta.deleted_count + 1
        if self.session.get_group(group_id) is not None:
            await commit_or_raise(
                self.session,
                f"count deleted member for {group_id}",
                group_updates={group_id: {"deleted_count": count}},
            )
        return count

    # ------------------------------------------------------------------
    # Morale check
    # ------------------------------------------------------------------

    async def roll_morale(self, group_id: str) -> Optional[MoraleResult]:
        """
        Roll morale for every living member of a group.

        Returns a skipped result for Fearless groups and None when nobody in
        the group is alive.
        """
        meta = self._meta(group_id)
        members = group_members(self.session.members(), group_id)

        if meta.discipline == Discipline.FEARLESS:
            result = MoraleResult(
                group_id=group_id,
                group_name=meta.name,
                discipline=meta.discipline,
                skipped=True,
                reason="fearless",
            )
            await safe_publish(self.notifier, MORALE_FEARLESS, result.to_dict())
            logger.info(f"Morale for {meta.name} skipped: fearless")
            return result

        living = [m for m in members if is_living(m)]
        if not living:
            logger.info(f"Morale for {meta.name} skipped: no living members")
            await safe_publish(self.notifier, MORALE_INFO, {
                "group_id": group_id,
                "message": f"{meta.name} has no living members to check morale",
            })
            return None

        casualties = casualty_count(members, meta.deleted_count)
        divisor = self._divisor(meta)
        mob = mob_confidence(len(living), divisor)
        dc = morale_dc(casualties)
        shape = DISCIPLINE_DICE[meta.discipline]
        effect = MoraleEffect(self.config.morale_status_effect)

        result = MoraleResult(
            group_id=group_id,
            group_name=meta.name,
            discipline=meta.discipline,
            dc=dc,
            casualties=casualties,
            mob_confidence=mob,
            divisor=divisor,
            living_count=len(living),
            die=shape.value,
            effect=effect.value,
        )

        for member in living:
            entry = await self._check_member(member, shape, mob, dc, effect)
            (result.held if entry.passed else result.broke).append(entry)

        self.prompts.mark(group_id)
        await self._persist_prompted(group_id, True)

        logger.info(
            f"Morale for {meta.name}: DC {dc}, {len(result.held)} held, {len(result.broke)} broke"
        )
        await safe_publish(self.notifier, MORALE_RESULT, result.to_dict())
        return result

    async def _check_member(
        self, member: Member, shape: DieShape, mob: int, dc: int, effect: MoraleEffect
    ) -> MoraleEntry:
        wis = coerce_number(member.wis_mod, "wis_mod")
        cr = coerce_number(member.challenge_rating, "challenge_rating")
        coerced = [label for label, n in (("wis_mod", wis), ("challenge_rating", cr)) if n.coerced]
        if coerced:
            logger.debug(f"Morale for {member.name}: treating {', '.join(coerced)} as 0")

        wis_mod = math.floor(wis.value)
        cr_floor = math.floor(cr.value)
        total_mod = wis_mod + cr_floor + mob

        outcome = await self.roller.evaluate(build_formula(shape, total_mod))
        passed = outcome.total >= dc

        entry = MoraleEntry(
            member_id=member.id,
            name=member.name,
            roll_total=outcome.total,
            natural=outcome.kept,
            wis_mod=wis_mod,
            cr=cr_floor,
            mob_confidence=mob,
            total_mod=total_mod,
            passed=passed,
            coerced=coerced,
        )
        if not passed:
            entry.effect_applied = await self._apply_effect(member, effect)
        return entry

    async def _apply_effect(self, member: Member, effect: MoraleEffect) -> bool:
        try:
            added = await self.session.apply_status_effect(
                member.id, effect.value, self.config.morale_effect_duration
            )
        except Exception as e:
            logger.warning(f"Could not apply {effect.value} to {member.name}: {e}")
            return False
        if not added:
            logger.debug(f"{member.name} is already {effect.value}")
        return True
