"""
Initiative Offset Encoding.

A finalised group writes one sortable number per member:

    encoded = aggregate + rank_offset(rank) + stagger(index, size)

- ``rank_offset`` separates groups that share the same rounded aggregate.
  It is 0 for rank 0 and grows by GROUP_RANK_STEP per rank, applied
  downward so a group that loses the tie-break sorts below the winner.
- ``stagger`` keeps members of one group contiguous and ordered: the top
  member gets the largest increment.

Bounds (MAX_GROUPS ranks, MAX_MEMBERS_PER_GROUP members) guarantee:

1. (size - 1) * STAGGER_INCREMENT < GROUP_RANK_STEP, so two ranks never
   interleave.
2. The total perturbation stays strictly inside (-0.5, +0.5), so a lower
   aggregate never crosses a higher one and re-finalising encoded values
   rounds back to the same aggregate in the same order.
"""
from dataclasses import dataclass
from typing import List, Sequence

STAGGER_INCREMENT = 0.0002
GROUP_RANK_STEP = 0.02
MAX_GROUPS = 20
MAX_MEMBERS_PER_GROUP = 99
ENCODING_PRECISION = 4

SORT_BASE_OFFSET = -1000
SORT_INCREMENT = 100


@dataclass
class GroupStanding:
    """What a group brings to the cross-group ranking."""
    group_id: str
    aggregate: float
    total_initiative: float = 0.0
    mean_dex_mod: float = 0.0


def rank_groups(standings: Sequence[GroupStanding]) -> List[GroupStanding]:
    """
    Order groups for rank assignment.

    Higher aggregate first, then higher sum of member initiatives, then
    higher mean DEX modifier, then group id ascending as a stable fallback.
    """
    return sorted(
        standings,
        key=lambda s: (-s.aggregate, -s.total_initiative, -s.mean_dex_mod, s.group_id),
    )


def group_rank_offset(rank: int) -> float:
    """
    Offset applied to every member of the group at ``rank``.

    Raises:
        ValueError: If the rank is outside 0..MAX_GROUPS-1
    """
    if rank < 0 or rank >= MAX_GROUPS:
        raise ValueError(f"Group rank {rank} outside supported range 0..{MAX_GROUPS - 1}")
    if rank == 0:
        return 0.0
    return -round(rank * GROUP_RANK_STEP, ENCODING_PRECISION)


def member_stagger(index: int, size: int) -> float:
    """
    Increment for the member at ``index`` (0 = first in group order).

    Raises:
        ValueError: If the group is empty, too large, or index is out of range
    """
    if size < 1 or size > MAX_MEMBERS_PER_GROUP:
        raise ValueError(f"Group size {size} outside supported range 1..{MAX_MEMBERS_PER_GROUP}")
    if index < 0 or index >= size:
        raise ValueError(f"Member index {index} outside group of {size}")
    return round((size - index) * STAGGER_INCREMENT, ENCODING_PRECISION)


def encode_initiative(aggregate: float, rank: int, index: int, size: int) -> float:
    """Sortable initiative for one member."""
    value = aggregate + group_rank_offset(rank) + member_stagger(index, size)
    return round(value, ENCODING_PRECISION)


def encode_group(aggregate: float, rank: int, size: int) -> List[float]:
    """Sortable initiatives for a whole group, in group order (strictly decreasing)."""
    return [encode_initiative(aggregate, rank, index, size) for index in range(size)]


def sort_values(existing_sorts: Sequence[int], size: int) -> List[int]:
    """
    Secondary sort values for a freshly ordered group.

    Placed below every existing sort value so the group's list order is
    stable regardless of what the rest of the tracker holds.
    """
    base = (min(existing_sorts) if existing_sorts else 0) + SORT_BASE_OFFSET
    return [base + index * SORT_INCREMENT for index in range(size)]
