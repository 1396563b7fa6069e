"""
Bulk-Roll Interception.

A host "roll everyone" writes initiative one combatant at a time. Left alone,
every write would try to finalize its group. The interceptor holds the bulk
flag for the whole operation so those reactions are dropped, then finalizes
each group exactly once when the host is done.
"""
import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from squad_engine.core.group_index import UNGROUPED, build_group_index
from squad_engine.core.guards import GuardLayer
from squad_engine.core.session import CombatSession

logger = logging.getLogger("squad_engine.bulk_roll")

Finalizer = Callable[[str], Awaitable[Any]]


class BulkRollInterceptor:
    """
    Wraps host bulk operations for one encounter.

    ``processing`` holds the session ids currently inside a wrapped call; a
    nested wrapped call for the same session just runs the operation.
    """

    def __init__(
        self,
        session: CombatSession,
        guards: GuardLayer,
        finalize: Finalizer,
        settle_delay: float = 0.1,
    ):
        self.session = session
        self.guards = guards
        self.finalize = finalize
        self.settle_delay = settle_delay
        self.processing: Set[str] = set()
        self.last_results: Dict[str, Optional[Any]] = {}

    def wrap(self, operation: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        """Return an async callable that runs ``operation`` under the bulk flag."""

        @functools.wraps(operation)
        async def wrapper(*args, **kwargs):
            return await self.run(operation, *args, **kwargs)

        return wrapper

    async def run(self, operation: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        key = self.session.session_id
        if key in self.processing:
            logger.debug(f"Bulk operation already running for {key}; delegating")
            return await operation(*args, **kwargs)

        self.processing.add(key)
        try:
            with self.guards.bulk_operation():
                outcome = await operation(*args, **kwargs)
                if self.settle_delay:
                    await asyncio.sleep(self.settle_delay)
                self.last_results = await self._finalize_groups()
            return outcome
        finally:
            self.processing.discard(key)

    async def _finalize_groups(self) -> Dict[str, Optional[Any]]:
        """Finalize every group once; one group failing does not stop the rest."""
        index = build_group_index(self.session.members(), self.session.groups())
        results: Dict[str, Optional[Any]] = {}
        first_error: Optional[Exception] = None

        for group_id in index:
            if group_id == UNGROUPED:
                continue
            try:
                results[group_id] = await self.finalize(group_id)
            except Exception as e:
                logger.error(f"Finalize of {group_id} after bulk roll failed: {e}", exc_info=True)
                results[group_id] = None
                if first_error is None:
                    first_error = e

        finalized = sum(1 for r in results.values() if r is not None)
        logger.info(f"Bulk roll settled: finalized {finalized} of {len(results)} groups")
        if first_error is not None:
            raise first_error
        return results
