"""
Initiative Aggregation.

Turns the individual initiative rolls of a group's members into one group
position in the turn order:

- members are ordered by (initiative desc, DEX score desc, id asc)
- the group aggregate is the rounded mean of member rolls; members still
  holding an encoded value are read back as the roll stored for them
- groups sharing an aggregate are ranked apart
- each member gets a sortable encoded value (see initiative_encoding)

Everything a finalize writes goes to the host in one commit before any
notification is published.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from squad_engine.core.dice import DieShape, RollMode, RollService, build_formula
from squad_engine.core.errors import ValidationError
from squad_engine.core.group_index import GroupMeta, group_members
from squad_engine.core.guards import GuardLayer
from squad_engine.core.initiative_encoding import (
    MAX_GROUPS,
    MAX_MEMBERS_PER_GROUP,
    GroupStanding,
    encode_group,
    group_rank_offset,
    rank_groups,
    sort_values,
)
from squad_engine.core.notifications import (
    INITIATIVE_ROLL,
    INITIATIVE_SUMMARY,
    Notifier,
    safe_publish,
)
from squad_engine.core.numeric import (
    coerce_number,
    exact_mean,
    format_modifier,
    is_finite_number,
    rounded_average,
)
from squad_engine.core.session import CombatSession, Member, commit_or_raise

logger = logging.getLogger("squad_engine.aggregation")


@dataclass
class AggregationEntry:
    """One member's line in a finalized group."""
    member_id: str
    name: str
    initiative: float  # Value before encoding
    dex_score: int
    dex_mod: int
    encoded: float
    sort: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "member_id": self.member_id,
            "name": self.name,
            "initiative": self.initiative,
            "dex_score": self.dex_score,
            "dex_mod": self.dex_mod,
            "encoded": self.encoded,
            "sort": self.sort,
        }


@dataclass
class AggregationResult:
    """Outcome of one finalize. Rebuilt from scratch every time."""
    group_id: str
    group_name: str
    aggregate: int
    rank: int
    rank_offset: float
    entries: List[AggregationEntry] = field(default_factory=list)
    total: float = 0
    high: float = 0
    low: float = 0
    mean_dex_mod: float = 0.0
    reencoded_groups: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return (
            f"{self.group_name} acts on {self.aggregate} "
            f"(total {self.total}, high {self.high}, low {self.low}, "
            f"avg DEX {format_modifier(round(self.mean_dex_mod, 1))})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "group_name": self.group_name,
            "aggregate": self.aggregate,
            "rank": self.rank,
            "rank_offset": self.rank_offset,
            "entries": [e.to_dict() for e in self.entries],
            "total": self.total,
            "high": self.high,
            "low": self.low,
            "mean_dex_mod": self.mean_dex_mod,
            "reencoded_groups": list(self.reencoded_groups),
            "message": self.message,
        }


def order_members(members: Sequence[Member], values: Optional[Dict[str, float]] = None) -> List[Member]:
    """Deterministic group order: initiative desc, DEX score desc, id asc."""
    if values is None:
        values = {m.id: m.initiative for m in members}
    return sorted(members, key=lambda m: (-values[m.id], -m.dex_score, m.id))


def decode_rolls(meta: GroupMeta, members: Sequence[Member]) -> Dict[str, float]:
    """
    Read each member's rolled initiative back from its current value.

    A member still holding the value the last finalize wrote for it gets its
    stored roll; anything else is taken as a fresh roll.
    """
    rolls = {}
    for member in members:
        stored = meta.rolls.get(member.id)
        if stored is not None and member.initiative == stored.get("encoded"):
            rolls[member.id] = stored["raw"]
        else:
            rolls[member.id] = member.initiative
    return rolls


def _mean_dex_mod(members: Sequence[Member]) -> float:
    mods = [coerce_number(m.dex_mod, "dex_mod").value for m in members]
    return float(exact_mean(mods)) if mods else 0.0


@dataclass
class _GroupSnapshot:
    """A group as read back from the host for ranking."""
    group_id: str
    meta: GroupMeta
    ordered: List[Member]
    rolls: Dict[str, float]
    standing: GroupStanding
    encoded: bool  # Members still hold exactly what the last finalize wrote


class InitiativeAggregator:
    """
    Computes and persists group initiative.

    Shares the coordinator's guard layer: finalize takes the mutex, explicit
    group writes hold the group's skip flag.
    """

    def __init__(
        self,
        session: CombatSession,
        guards: GuardLayer,
        roller: RollService,
        notifier: Optional[Notifier] = None,
    ):
        self.session = session
        self.guards = guards
        self.roller = roller
        self.notifier = notifier
        self.finalize_count = 0

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def finalize(self, group_id: str, bypass_mutex: bool = False) -> Optional[AggregationResult]:
        """
        Recompute a group's aggregate and encode its members.

        Returns None without writing anything when the mutex is held (and
        not bypassed), the group has no members, a member has no initiative,
        or the group carries a manual override.
        """
        if self.guards.mutex and not bypass_mutex:
            logger.debug(f"Finalize of {group_id} skipped: another finalize is running")
            return None

        with self.guards.exclusive():
            return await self._finalize(group_id)

    async def _finalize(self, group_id: str) -> Optional[AggregationResult]:
        members = group_members(self.session.members(), group_id)
        if not members:
            logger.debug(f"Finalize of {group_id} skipped: no members")
            return None

        missing = [m.name for m in members if not is_finite_number(m.initiative)]
        if missing:
            logger.debug(f"Finalize of {group_id} skipped: waiting on {', '.join(missing)}")
            return None

        meta = GroupMeta.from_dict(self.session.get_group(group_id))
        if meta.initiative_override:
            logger.debug(f"Finalize of {group_id} skipped: manual initiative {meta.initiative} in effect")
            return None

        if len(members) > MAX_MEMBERS_PER_GROUP:
            raise ValidationError(
                "members", f"A group holds at most {MAX_MEMBERS_PER_GROUP} members", value=len(members)
            )

        self.finalize_count += 1
        current = self._snapshot(group_id, meta, members)
        others = self._other_snapshots(group_id)

        # Overridden groups sit where the GM put them and take no rank
        ranked = [current] + [s for s in others if not s.meta.initiative_override]
        if len(ranked) > MAX_GROUPS:
            raise ValidationError(
                "groups", f"At most {MAX_GROUPS} groups can hold initiative", value=len(ranked)
            )
        ranks = {s.group_id: rank for rank, s in enumerate(rank_groups([s.standing for s in ranked]))}

        rank = ranks[group_id]
        aggregate = int(current.standing.aggregate)
        encoded = encode_group(aggregate, rank, len(current.ordered))
        outside_sorts = [m.sort for m in self.session.members() if m.group_id != group_id]
        sorts = sort_values(outside_sorts, len(current.ordered))

        member_updates: Dict[str, Dict[str, Any]] = {}
        entries = []
        for member, value, sort in zip(current.ordered, encoded, sorts):
            member_updates[member.id] = {"initiative": value, "sort": sort}
            entries.append(AggregationEntry(
                member_id=member.id,
                name=member.name,
                initiative=current.rolls[member.id],
                dex_score=member.dex_score,
                dex_mod=member.dex_mod,
                encoded=value,
                sort=sort,
            ))
        group_updates: Dict[str, Optional[Dict[str, Any]]] = {
            group_id: {
                "initiative": aggregate,
                "rank": rank,
                "standing_total": current.standing.total_initiative,
                "standing_dex": current.standing.mean_dex_mod,
                "rolls": {e.member_id: {"raw": e.initiative, "encoded": e.encoded} for e in entries},
            }
        }

        # Groups whose rank moved are re-encoded in the same commit so no two
        # tied groups ever share an offset
        reencoded = []
        for other in others:
            new_rank = ranks.get(other.group_id)
            if new_rank is None or not other.encoded or other.meta.rank == new_rank:
                continue
            values = encode_group(int(other.standing.aggregate), new_rank, len(other.ordered))
            for member, value in zip(other.ordered, values):
                member_updates[member.id] = {"initiative": value}
            group_updates[other.group_id] = {
                "rank": new_rank,
                "rolls": {
                    member.id: {"raw": other.rolls[member.id], "encoded": value}
                    for member, value in zip(other.ordered, values)
                },
            }
            reencoded.append(other.group_id)

        await commit_or_raise(
            self.session,
            f"finalize group {group_id}",
            member_updates=member_updates,
            group_updates=group_updates,
        )

        raw = [e.initiative for e in entries]
        result = AggregationResult(
            group_id=group_id,
            group_name=meta.name,
            aggregate=aggregate,
            rank=rank,
            rank_offset=group_rank_offset(rank),
            entries=entries,
            total=current.standing.total_initiative,
            high=max(raw),
            low=min(raw),
            mean_dex_mod=current.standing.mean_dex_mod,
            reencoded_groups=reencoded,
        )
        logger.info(
            f"Finalized {meta.name} ({group_id}): aggregate {aggregate}, rank {rank}, "
            f"{len(entries)} members"
            + (f", re-encoded {len(reencoded)} other groups" if reencoded else "")
        )
        await safe_publish(self.notifier, INITIATIVE_SUMMARY, result.to_dict())
        return result

    def _snapshot(self, group_id: str, meta: GroupMeta, members: List[Member]) -> _GroupSnapshot:
        rolls = decode_rolls(meta, members)
        ordered = order_members(members, rolls)
        values = [rolls[m.id] for m in ordered]
        standing = GroupStanding(
            group_id=group_id,
            aggregate=rounded_average(values),
            total_initiative=sum(values),
            mean_dex_mod=_mean_dex_mod(ordered),
        )
        return _GroupSnapshot(group_id, meta, ordered, rolls, standing, encoded=self._holds_encoding(meta, members))

    def _other_snapshots(self, group_id: str) -> List[_GroupSnapshot]:
        """Every other group that currently holds an aggregate."""
        members = self.session.members()
        snapshots = []
        for gid, data in self.session.groups().items():
            if gid == group_id:
                continue
            meta = GroupMeta.from_dict(data)
            if not is_finite_number(meta.initiative):
                continue
            group = group_members(members, gid)
            if not group:
                continue

            if all(is_finite_number(m.initiative) for m in group):
                rolls = decode_rolls(meta, group)
                ordered = order_members(group, rolls)
                encoded = not meta.initiative_override and self._holds_encoding(meta, group)
            else:
                rolls = {}
                ordered = group
                encoded = False

            total = meta.standing_total
            if total is None:
                total = sum(m.initiative for m in group if is_finite_number(m.initiative))
            dex = meta.standing_dex
            if dex is None:
                dex = _mean_dex_mod(group)

            standing = GroupStanding(
                group_id=gid,
                aggregate=meta.initiative,
                total_initiative=total,
                mean_dex_mod=dex,
            )
            snapshots.append(_GroupSnapshot(gid, meta, ordered, rolls, standing, encoded=encoded))
        return snapshots

    @staticmethod
    def _holds_encoding(meta: GroupMeta, members: Sequence[Member]) -> bool:
        if meta.rank is None or not 0 <= meta.rank < MAX_GROUPS:
            return False
        if not members or set(meta.rolls) != {m.id for m in members}:
            return False
        return all(m.initiative == meta.rolls[m.id].get("encoded") for m in members)

    # ------------------------------------------------------------------
    # Explicit group operations
    # ------------------------------------------------------------------

    async def roll_and_finalize(self, group_id: str, mode: RollMode = RollMode.NORMAL) -> Optional[AggregationResult]:
        """
        Roll for every member still lacking initiative, then finalize once.

        The group's skip flag is held throughout, so the member writes this
        produces never trigger a finalize on a partial result. A second roll
        for a group already rolling is dropped.
        """
        if not self.guards.try_skip_group(group_id):
            logger.debug(f"Roll for {group_id} dropped: a roll is already in flight")
            return None

        try:
            members = group_members(self.session.members(), group_id)
            meta = GroupMeta.from_dict(self.session.get_group(group_id))
            pending = [m for m in members if not is_finite_number(m.initiative)]

            if not pending and not meta.initiative_override:
                logger.debug(f"Roll for {group_id}: every member already has initiative")
                return None

            shape = DieShape.for_mode(mode)
            outcomes = []
            member_updates: Dict[str, Dict[str, Any]] = {}
            for member in pending:
                modifier = coerce_number(member.dex_mod, "dex_mod").value
                outcome = await self.roller.evaluate(build_formula(shape, modifier))
                member_updates[member.id] = {"initiative": outcome.total}
                outcomes.append((member, outcome))

            group_updates = {}
            if meta.initiative_override:
                group_updates[group_id] = {"initiative_override": False}

            await commit_or_raise(
                self.session,
                f"roll initiative for group {group_id}",
                member_updates=member_updates,
                group_updates=group_updates,
            )
            logger.info(f"Rolled {shape.value} initiative for {len(outcomes)} members of {meta.name}")

            for member, outcome in outcomes:
                await safe_publish(self.notifier, INITIATIVE_ROLL, {
                    "group_id": group_id,
                    "member_id": member.id,
                    "name": member.name,
                    "formula": outcome.formula,
                    "total": outcome.total,
                    "dice": list(outcome.dice),
                    "kept": outcome.kept,
                    "message": f"{member.name} rolls {outcome.total} ({outcome.formula})",
                })

            return await self.finalize(group_id, bypass_mutex=True)
        finally:
            self.guards.release_group(group_id)

    async def set_group_initiative(self, group_id: str, value: float) -> Optional[Dict[str, Any]]:
        """
        Manually place a group at ``value``.

        Every member moves by (value - mean of their rolls), so their spread
        around the mean is unchanged. ``value`` is stored as given and marked as an
        override; finalize leaves it alone until the next roll or reset.

        Raises:
            ValidationError: If value is not a finite number
        """
        if not is_finite_number(value):
            raise ValidationError("initiative", "Must be a finite number", value=value)

        with self.guards.group_skip(group_id) as acquired:
            if not acquired:
                logger.debug(f"Set initiative for {group_id} dropped: a roll is in flight")
                return None

            members = group_members(self.session.members(), group_id)
            if not members:
                logger.debug(f"Set initiative for {group_id} skipped: no members")
                return None

            rolls = decode_rolls(GroupMeta.from_dict(self.session.get_group(group_id)), members)
            current = [rolls[m.id] if is_finite_number(rolls[m.id]) else 0 for m in members]
            old_mean = exact_mean(current) or Decimal(0)
            delta = Decimal(str(value)) - old_mean

            rebased = {
                m.id: float(Decimal(str(v)) + delta)
                for m, v in zip(members, current)
            }
            await commit_or_raise(
                self.session,
                f"set initiative for group {group_id}",
                member_updates={mid: {"initiative": v} for mid, v in rebased.items()},
                group_updates={group_id: {
                    "initiative": value,
                    "initiative_override": True,
                    "rank": None,
                    "standing_total": float(sum(rebased.values())),
                    "standing_dex": _mean_dex_mod(members),
                    "rolls": None,
                }},
            )
            logger.info(f"Group {group_id} initiative set to {value} (delta {float(delta):+g})")
            return {
                "group_id": group_id,
                "initiative": value,
                "delta": float(delta),
                "members": rebased,
            }

    async def reset_group_initiative(self, group_id: str) -> Optional[int]:
        """Clear every member's initiative and the group aggregate. Returns members cleared."""
        with self.guards.group_skip(group_id) as acquired:
            if not acquired:
                logger.debug(f"Reset of {group_id} dropped: a roll is in flight")
                return None

            members = group_members(self.session.members(), group_id)
            await commit_or_raise(
                self.session,
                f"reset initiative for group {group_id}",
                member_updates={m.id: {"initiative": None} for m in members},
                group_updates={group_id: {
                    "initiative": None,
                    "initiative_override": False,
                    "rank": None,
                    "standing_total": None,
                    "standing_dex": None,
                    "rolls": None,
                }},
            )
            logger.info(f"Reset initiative for group {group_id} ({len(members)} members)")
            return len(members)
