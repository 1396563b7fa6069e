"""
Group Index.

Builds the ordered mapping of group id -> {name, members} that rendering and
every aggregation pass read, and defines the metadata each group carries on
the host's encounter record.
"""
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("squad_engine.group_index")

# Group id every combatant falls back to when it belongs to no squad
UNGROUPED = "ungrouped"
UNNAMED_GROUP = "Unnamed Group"


class Discipline(str, Enum):
    """How steady a group is under casualties."""
    EXPENDABLE = "expendable"
    STANDARD = "standard"
    ELITE = "elite"
    FEARLESS = "fearless"

    @property
    def label(self) -> str:
        return DISCIPLINE_LABELS[self]


DISCIPLINE_LABELS = {
    Discipline.EXPENDABLE: "Expendable (Disadvantage)",
    Discipline.STANDARD: "Standard",
    Discipline.ELITE: "Elite (Advantage)",
    Discipline.FEARLESS: "Fearless (Immune)",
}


def generate_group_id() -> str:
    """Generate a unique id for a new group."""
    return "gr-" + uuid.uuid4().hex[:16]


@dataclass
class GroupMeta:
    """
    Metadata stored for one group on the encounter record.

    Attributes:
        name: Display name
        initiative: Last aggregate (or manual override), None until rolled
        pinned: Stays expanded when the tracker auto-collapses
        hidden: Hidden from players
        color: Accent colour for the header
        img: Header icon path
        discipline: Morale discipline level
        mob_confidence_divisor: Per-group override of the mob bonus divisor
        starting_size: Member count when the encounter started (write-once)
        deleted_count: Members removed from the encounter, counted as casualties
        auto_prompted: Mirrors the morale prompt tracker for observers
        initiative_override: Set by a manual group initiative
        rank: Cross-group rank written at last finalize
        standing_total: Sum of raw member initiatives behind that rank
        standing_dex: Mean DEX modifier behind that rank
        rolls: Member id -> {"raw": rolled value, "encoded": value written at
            last finalize}, so encoded members can be read back as their rolls
    """
    name: str = UNNAMED_GROUP
    initiative: Optional[float] = None
    pinned: bool = True
    hidden: bool = False
    color: str = "#7b68ee"
    img: str = "icons/svg/combat.svg"
    discipline: Discipline = Discipline.STANDARD
    mob_confidence_divisor: Optional[int] = None
    starting_size: Optional[int] = None
    deleted_count: int = 0
    auto_prompted: bool = False
    initiative_override: bool = False
    rank: Optional[int] = None
    standing_total: Optional[float] = None
    standing_dex: Optional[float] = None
    rolls: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the plain dict the host persists."""
        return {
            "name": self.name,
            "initiative": self.initiative,
            "pinned": self.pinned,
            "hidden": self.hidden,
            "color": self.color,
            "img": self.img,
            "discipline": self.discipline.value,
            "mob_confidence_divisor": self.mob_confidence_divisor,
            "starting_size": self.starting_size,
            "deleted_count": self.deleted_count,
            "auto_prompted": self.auto_prompted,
            "initiative_override": self.initiative_override,
            "rank": self.rank,
            "standing_total": self.standing_total,
            "standing_dex": self.standing_dex,
            "rolls": {mid: dict(roll) for mid, roll in self.rolls.items()},
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GroupMeta":
        """Create from a stored dict, tolerating missing or unknown values."""
        data = data or {}
        try:
            discipline = Discipline(data.get("discipline") or Discipline.STANDARD.value)
        except ValueError:
            logger.debug(f"Unknown discipline {data.get('discipline')!r}; using standard")
            discipline = Discipline.STANDARD
        return cls(
            name=data.get("name") or UNNAMED_GROUP,
            initiative=data.get("initiative"),
            pinned=data.get("pinned", True),
            hidden=data.get("hidden", False),
            color=data.get("color") or "#7b68ee",
            img=data.get("img") or "icons/svg/combat.svg",
            discipline=discipline,
            mob_confidence_divisor=data.get("mob_confidence_divisor"),
            starting_size=data.get("starting_size"),
            deleted_count=data.get("deleted_count") or 0,
            auto_prompted=data.get("auto_prompted", False),
            initiative_override=data.get("initiative_override", False),
            rank=data.get("rank"),
            standing_total=data.get("standing_total"),
            standing_dex=data.get("standing_dex"),
            rolls={mid: dict(roll) for mid, roll in (data.get("rolls") or {}).items()},
        )


@dataclass
class GroupEntry:
    """One bucket of the group index."""
    group_id: str
    name: str
    members: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "name": self.name,
            "members": [m.id for m in self.members],
        }


def build_group_index(
    members: Iterable[Any],
    stored_groups: Optional[Dict[str, Dict[str, Any]]] = None,
) -> "OrderedDict[str, GroupEntry]":
    """
    Organise members into an ordered map keyed by group id.

    Groups appear in the order their first member appears; stored groups
    with no members follow, in stored order. The ungrouped bucket only
    appears when a member is in it.

    Args:
        members: Members in tracker order
        stored_groups: Group metadata dicts keyed by group id

    Returns:
        OrderedDict of group id -> GroupEntry
    """
    stored = stored_groups or {}
    index: "OrderedDict[str, GroupEntry]" = OrderedDict()

    for member in members:
        gid = getattr(member, "group_id", None) or UNGROUPED
        if gid not in index:
            if gid == UNGROUPED:
                name = "Ungrouped"
            else:
                name = (stored.get(gid) or {}).get("name") or UNNAMED_GROUP
            index[gid] = GroupEntry(group_id=gid, name=name)
        index[gid].members.append(member)

    for gid, data in stored.items():
        if gid not in index and gid != UNGROUPED:
            index[gid] = GroupEntry(
                group_id=gid,
                name=(data or {}).get("name") or UNNAMED_GROUP,
            )

    logger.debug(f"Indexed {len(index)} groups")
    return index


def group_members(members: Iterable[Any], group_id: str) -> List[Any]:
    """Members whose group id matches."""
    return [m for m in members if (getattr(m, "group_id", None) or UNGROUPED) == group_id]
