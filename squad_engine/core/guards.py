"""
Re-entrancy Guard Layer.

Advisory, non-blocking flags consulted before the engine reacts to a host
notification:

- mutex: held for the body of one finalize; reactions arriving meanwhile are
  dropped
- bulk operation: held while a host "roll everyone" runs; per-member
  reactions are dropped and the bulk shim finalizes once per group afterwards
- per-group skip: held while an explicit group roll/override writes members

Nothing here ever waits. A reaction either proceeds or is dropped with a
reason; drops are tallied so tests and diagnostics can see why.
"""
import logging
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from squad_engine.core.group_index import UNGROUPED

logger = logging.getLogger("squad_engine.guards")

# Drop reasons
REASON_MUTEX = "finalize already running"
REASON_BULK = "bulk roll in progress"
REASON_NO_INITIATIVE_CHANGE = "initiative unchanged"
REASON_UNGROUPED = "combatant is ungrouped"
REASON_GROUP_SKIPPED = "group roll in flight"

Predicate = Callable[[Any, Dict[str, Any]], Optional[str]]


@dataclass
class GuardDecision:
    """Outcome of running a reaction through the guard pipeline."""
    proceed: bool
    reason: Optional[str] = None


class GuardLayer:
    """
    Flags owned by one coordinator.

    Each encounter gets its own instance, so concurrent encounters (and
    tests) never share guard state.
    """

    def __init__(self):
        self.mutex = False
        self.bulk_in_progress = False
        self.skipped_groups: Set[str] = set()
        self.dropped: Counter = Counter()
        self._initiative_pipeline: List[Tuple[str, Predicate]] = [
            ("mutex", self._check_mutex),
            ("bulk", self._check_bulk),
            ("initiative", self._check_initiative_changed),
            ("ungrouped", self._check_grouped),
            ("group_skip", self._check_group_skip),
        ]

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def check_initiative_reaction(self, member: Any, changes: Dict[str, Any]) -> GuardDecision:
        """Decide whether a member update should trigger a group finalize."""
        return self._run(self._initiative_pipeline, member, changes)

    def _run(self, pipeline: List[Tuple[str, Predicate]], member: Any, changes: Dict[str, Any]) -> GuardDecision:
        for _name, predicate in pipeline:
            reason = predicate(member, changes)
            if reason:
                self.dropped[reason] += 1
                logger.debug(f"Dropped reaction for {getattr(member, 'name', member)}: {reason}")
                return GuardDecision(proceed=False, reason=reason)
        return GuardDecision(proceed=True)

    def _check_mutex(self, member: Any, changes: Dict[str, Any]) -> Optional[str]:
        return REASON_MUTEX if self.mutex else None

    def _check_bulk(self, member: Any, changes: Dict[str, Any]) -> Optional[str]:
        return REASON_BULK if self.bulk_in_progress else None

    def _check_initiative_changed(self, member: Any, changes: Dict[str, Any]) -> Optional[str]:
        return None if "initiative" in changes else REASON_NO_INITIATIVE_CHANGE

    def _check_grouped(self, member: Any, changes: Dict[str, Any]) -> Optional[str]:
        group_id = getattr(member, "group_id", None)
        return REASON_UNGROUPED if not group_id or group_id == UNGROUPED else None

    def _check_group_skip(self, member: Any, changes: Dict[str, Any]) -> Optional[str]:
        return REASON_GROUP_SKIPPED if member.group_id in self.skipped_groups else None

    # ------------------------------------------------------------------
    # Flag scopes
    # ------------------------------------------------------------------

    @contextmanager
    def exclusive(self) -> Iterator[bool]:
        """
        Take the mutex if it is free.

        Yields True when this scope owns the mutex. Only the owner releases
        it, so a bypassing caller inside another finalize leaves it held.
        """
        if self.mutex:
            yield False
            return
        self.mutex = True
        try:
            yield True
        finally:
            self.mutex = False

    @contextmanager
    def bulk_operation(self) -> Iterator[None]:
        self.bulk_in_progress = True
        try:
            yield
        finally:
            self.bulk_in_progress = False

    def try_skip_group(self, group_id: str) -> bool:
        """Hold the skip flag for a group; False if it is already held."""
        if group_id in self.skipped_groups:
            return False
        self.skipped_groups.add(group_id)
        return True

    def release_group(self, group_id: str) -> None:
        self.skipped_groups.discard(group_id)

    @contextmanager
    def group_skip(self, group_id: str) -> Iterator[bool]:
        """
        Hold the per-group skip flag for the scope.

        Yields False (and releases nothing) when another operation already
        holds it.
        """
        acquired = self.try_skip_group(group_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release_group(group_id)

    def is_group_skipped(self, group_id: str) -> bool:
        return group_id in self.skipped_groups

    def forget_group(self, group_id: str) -> None:
        """Drop any state held for a deleted group."""
        self.skipped_groups.discard(group_id)

    def status(self) -> Dict[str, Any]:
        return {
            "mutex": self.mutex,
            "bulk_in_progress": self.bulk_in_progress,
            "skipped_groups": sorted(self.skipped_groups),
            "dropped": dict(self.dropped),
        }
