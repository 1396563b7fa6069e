"""Tests for group initiative aggregation."""
import pytest
from unittest.mock import AsyncMock, patch

from squad_engine.core.coordinator import SquadCoordinator
from squad_engine.core.errors import (
    GroupNotFoundError,
    PersistenceError,
    ValidationError,
)
from squad_engine.core.group_index import UNGROUPED, GroupMeta
from squad_engine.core.guards import REASON_GROUP_SKIPPED
from squad_engine.core.initiative_encoding import MAX_GROUPS
from squad_engine.core.notifications import INITIATIVE_ROLL, INITIATIVE_SUMMARY
from squad_engine.core.session import InMemoryCombatSession

from conftest import GOBLINS, WOLVES, FailingNotifier, make_member, set_initiatives


def initiatives(session, group_id):
    return {m.id: m.initiative for m in session.members() if m.group_id == group_id}


def meta(session, group_id):
    return GroupMeta.from_dict(session.get_group(group_id))


@pytest.mark.initiative
class TestFinalize:
    """Tests for computing and encoding a group's initiative."""

    @pytest.mark.asyncio
    async def test_aggregate_and_encoding(self, coordinator, session):
        """[18, 14, 10] settles on 14 with members staggered in roll order."""
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})

        result = await coordinator.finalize(GOBLINS)

        assert result.aggregate == 14
        assert result.rank == 0
        assert [e.member_id for e in result.entries] == ["goblin-1", "goblin-2", "goblin-3"]
        assert initiatives(session, GOBLINS) == {
            "goblin-1": 14.0006,
            "goblin-2": 14.0004,
            "goblin-3": 14.0002,
        }
        assert [session.get_member(m).sort for m in ("goblin-1", "goblin-2", "goblin-3")] == [-1000, -900, -800]
        assert meta(session, GOBLINS).initiative == 14

    @pytest.mark.asyncio
    async def test_half_rounds_up(self, coordinator, session):
        set_initiatives(session, {"wolf-1": 15, "wolf-2": 14})
        result = await coordinator.finalize(WOLVES)
        assert result.aggregate == 15

    @pytest.mark.asyncio
    async def test_summary_values(self, coordinator, session):
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})
        result = await coordinator.finalize(GOBLINS)
        assert result.total == 42
        assert result.high == 18
        assert result.low == 10
        assert result.mean_dex_mod == 2.0

    @pytest.mark.asyncio
    async def test_ties_broken_by_dex_score_then_id(self, coordinator, session):
        """Equal rolls order by DEX score, then by id; encoded values never collide."""
        set_initiatives(session, {"goblin-1": 12, "goblin-2": 12, "goblin-3": 12})

        result = await coordinator.finalize(GOBLINS)

        # goblin-3 has the best DEX score; goblin-1 and goblin-2 tie on it
        assert [e.member_id for e in result.entries] == ["goblin-3", "goblin-1", "goblin-2"]
        encoded = [e.encoded for e in result.entries]
        assert len(set(encoded)) == 3
        assert encoded == sorted(encoded, reverse=True)

    @pytest.mark.asyncio
    async def test_finalize_twice_is_idempotent(self, coordinator, session):
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})

        first = await coordinator.finalize(GOBLINS)
        after_first = initiatives(session, GOBLINS)
        second = await coordinator.finalize(GOBLINS)

        assert second.aggregate == first.aggregate
        assert [e.member_id for e in second.entries] == [e.member_id for e in first.entries]
        assert initiatives(session, GOBLINS) == after_first
        assert second.total == first.total

    @pytest.mark.asyncio
    async def test_higher_aggregate_sorts_above(self, coordinator, session):
        set_initiatives(session, {
            "goblin-1": 18, "goblin-2": 14, "goblin-3": 10,
            "wolf-1": 16, "wolf-2": 15,
        })

        await coordinator.finalize(GOBLINS)
        await coordinator.finalize(WOLVES)

        wolves = initiatives(session, WOLVES).values()
        goblins = initiatives(session, GOBLINS).values()
        assert min(wolves) > max(goblins)

    @pytest.mark.asyncio
    async def test_tied_groups_ranked_apart(self, coordinator, session):
        """Two groups on 14: the larger roll total goes first, the other is re-encoded below."""
        set_initiatives(session, {
            "goblin-1": 15, "goblin-2": 13, "goblin-3": 14,
            "wolf-1": 15, "wolf-2": 13,
        })

        wolves_first = await coordinator.finalize(WOLVES)
        assert wolves_first.rank == 0

        goblins = await coordinator.finalize(GOBLINS)

        assert goblins.aggregate == 14
        assert goblins.rank == 0
        assert goblins.reencoded_groups == [WOLVES]
        assert meta(session, WOLVES).rank == 1
        assert min(initiatives(session, GOBLINS).values()) > max(initiatives(session, WOLVES).values())

        # Re-finalizing the lower group keeps its place
        before = initiatives(session, WOLVES)
        again = await coordinator.finalize(WOLVES)
        assert again.rank == 1
        assert again.reencoded_groups == []
        assert initiatives(session, WOLVES) == before

    @pytest.mark.asyncio
    async def test_reencoded_group_reports_its_rolls(self, coordinator, session):
        set_initiatives(session, {
            "goblin-1": 15, "goblin-2": 13, "goblin-3": 14,
            "wolf-1": 15, "wolf-2": 13,
        })
        await coordinator.finalize(WOLVES)
        await coordinator.finalize(GOBLINS)

        again = await coordinator.finalize(WOLVES)

        assert {e.member_id: e.initiative for e in again.entries} == {"wolf-1": 15, "wolf-2": 13}
        assert again.aggregate == 14
        assert (again.high, again.low, again.total) == (15, 13, 28)

    @pytest.mark.asyncio
    async def test_new_value_replaces_stored_roll(self, coordinator, session):
        """A member written after finalize counts with its new value; the rest keep their rolls."""
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})
        await coordinator.finalize(GOBLINS)
        set_initiatives(session, {"goblin-3": 13})

        result = await coordinator.finalize(GOBLINS)

        # (18 + 14 + 13) / 3
        assert result.aggregate == 15
        assert meta(session, GOBLINS).rolls["goblin-3"] == {"raw": 13, "encoded": 15.0002}

    @pytest.mark.asyncio
    async def test_publishes_summary(self, coordinator, session, feed):
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})
        await coordinator.finalize(GOBLINS)

        summaries = feed.of_kind(INITIATIVE_SUMMARY)
        assert len(summaries) == 1
        payload = summaries[0]["payload"]
        assert payload["aggregate"] == 14
        assert payload["group_name"] == "Goblin Raiders"
        assert len(payload["entries"]) == 3
        assert payload["high"] == 18
        assert payload["low"] == 10
        assert "Goblin Raiders" in payload["message"]


@pytest.mark.initiative
class TestFinalizePreconditions:
    """Finalize quietly does nothing until the group is ready."""

    @pytest.mark.asyncio
    async def test_partial_rolls_do_not_finalize(self, coordinator, session):
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14})
        commits = session.commit_count

        assert await coordinator.finalize(GOBLINS) is None
        assert session.commit_count == commits
        assert meta(session, GOBLINS).initiative is None

    @pytest.mark.asyncio
    async def test_empty_group(self, coordinator, session):
        await session.commit(group_updates={"gr-empty": {"name": "Reserves"}})
        assert await coordinator.finalize("gr-empty") is None

    @pytest.mark.asyncio
    async def test_held_mutex_drops_finalize(self, coordinator, session):
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})
        coordinator.guards.mutex = True

        assert await coordinator.aggregator.finalize(GOBLINS) is None

        result = await coordinator.aggregator.finalize(GOBLINS, bypass_mutex=True)
        assert result.aggregate == 14
        assert coordinator.guards.mutex is True

    @pytest.mark.asyncio
    async def test_ungrouped_is_not_a_group(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.finalize(UNGROUPED)

    @pytest.mark.asyncio
    async def test_unknown_group(self, coordinator):
        with pytest.raises(GroupNotFoundError):
            await coordinator.finalize("gr-missing")

    @pytest.mark.asyncio
    async def test_oversized_group_rejected(self, roller, feed, config):
        crowd = [make_member(f"rat-{i}", group_id="gr-rats", initiative=5) for i in range(100)]
        session = InMemoryCombatSession(members=crowd, groups={"gr-rats": {"name": "Swarm"}})
        coordinator = SquadCoordinator(session, roller=roller, notifier=feed, config=config)

        with pytest.raises(ValidationError):
            await coordinator.finalize("gr-rats")
        assert coordinator.guards.mutex is False


@pytest.mark.initiative
class TestFinalizeFailures:
    """Host failures surface to the caller and never leave flags held."""

    @pytest.mark.asyncio
    async def test_commit_failure_raises_persistence_error(self, coordinator, session):
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})

        with patch.object(session, "commit", AsyncMock(side_effect=RuntimeError("disk full"))):
            with pytest.raises(PersistenceError) as exc_info:
                await coordinator.finalize(GOBLINS)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert coordinator.guards.mutex is False
        assert initiatives(session, GOBLINS) == {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10}
        assert meta(session, GOBLINS).initiative is None

    @pytest.mark.asyncio
    async def test_notifier_failure_keeps_commit(self, session, roller, config):
        notifier = FailingNotifier()
        coordinator = SquadCoordinator(session, roller=roller, notifier=notifier, config=config)
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})

        result = await coordinator.finalize(GOBLINS)

        assert result.aggregate == 14
        assert notifier.attempts == 1
        assert meta(session, GOBLINS).initiative == 14

    @pytest.mark.asyncio
    async def test_failed_group_does_not_block_others(self, coordinator, session):
        set_initiatives(session, {
            "goblin-1": 18, "goblin-2": 14, "goblin-3": 10,
            "wolf-1": 16, "wolf-2": 15,
        })
        with patch.object(session, "commit", AsyncMock(side_effect=RuntimeError("timeout"))):
            with pytest.raises(PersistenceError):
                await coordinator.finalize(GOBLINS)

        result = await coordinator.finalize(WOLVES)
        assert result.aggregate == 16


@pytest.mark.initiative
class TestRollAndFinalize:
    """Tests for rolling a whole group."""

    @pytest.mark.asyncio
    async def test_rolls_everyone_and_finalizes_once(self, coordinator, session, roller, feed):
        roller.script(12, 8, 15)

        result = await coordinator.roll_and_finalize(GOBLINS)

        assert roller.formulas == ["1d20 + 2"] * 3
        assert result.aggregate == 14  # (14 + 10 + 17) / 3
        assert [e.member_id for e in result.entries] == ["goblin-3", "goblin-1", "goblin-2"]
        assert coordinator.aggregator.finalize_count == 1
        assert coordinator.guards.dropped[REASON_GROUP_SKIPPED] == 3
        assert not coordinator.guards.is_group_skipped(GOBLINS)
        assert len(feed.of_kind(INITIATIVE_ROLL)) == 3
        assert len(feed.of_kind(INITIATIVE_SUMMARY)) == 1

    @pytest.mark.asyncio
    async def test_only_unrolled_members_roll(self, coordinator, session, roller):
        set_initiatives(session, {"goblin-1": 20})
        roller.script(5, 6)

        result = await coordinator.roll_and_finalize(GOBLINS)

        assert len(roller.formulas) == 2
        rolled = {e.member_id: e.initiative for e in result.entries}
        assert rolled == {"goblin-1": 20, "goblin-3": 8, "goblin-2": 7}

    @pytest.mark.asyncio
    async def test_advantage_keeps_highest(self, coordinator, roller):
        roller.script(3, 18, 4, 9, 20, 1)

        result = await coordinator.roll_and_finalize(GOBLINS, "advantage")

        assert roller.formulas == ["2d20kh + 2"] * 3
        rolled = {e.member_id: e.initiative for e in result.entries}
        assert rolled == {"goblin-1": 20, "goblin-2": 11, "goblin-3": 22}
        assert result.aggregate == 18

    @pytest.mark.asyncio
    async def test_disadvantage_keeps_lowest(self, coordinator, roller):
        roller.script(3, 18, 4, 9, 20, 1)

        result = await coordinator.roll_and_finalize(GOBLINS, "disadvantage")

        assert roller.formulas == ["2d20kl + 2"] * 3
        rolled = {e.member_id: e.initiative for e in result.entries}
        assert rolled == {"goblin-1": 5, "goblin-2": 6, "goblin-3": 3}

    @pytest.mark.asyncio
    async def test_nothing_to_roll(self, coordinator, session, roller):
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})
        commits = session.commit_count

        assert await coordinator.roll_and_finalize(GOBLINS) is None
        assert roller.formulas == []
        assert session.commit_count == commits

    @pytest.mark.asyncio
    async def test_second_roll_for_same_group_dropped(self, coordinator, roller):
        coordinator.guards.try_skip_group(GOBLINS)

        assert await coordinator.roll_and_finalize(GOBLINS) is None
        assert roller.formulas == []
        assert coordinator.guards.is_group_skipped(GOBLINS)

    @pytest.mark.asyncio
    async def test_failure_releases_skip_flag(self, coordinator, session):
        with patch.object(session, "commit", AsyncMock(side_effect=RuntimeError("lost connection"))):
            with pytest.raises(PersistenceError):
                await coordinator.roll_and_finalize(GOBLINS)

        assert not coordinator.guards.is_group_skipped(GOBLINS)
        assert coordinator.guards.mutex is False

    @pytest.mark.asyncio
    async def test_unknown_mode(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.roll_and_finalize(GOBLINS, "sideways")


@pytest.mark.initiative
class TestSetGroupInitiative:
    """Tests for manual group placement."""

    @pytest.mark.asyncio
    async def test_rebases_members_by_delta(self, coordinator, session):
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})

        result = await coordinator.set_group_initiative(GOBLINS, 20)

        assert result["delta"] == 6
        assert initiatives(session, GOBLINS) == {"goblin-1": 24, "goblin-2": 20, "goblin-3": 16}
        stored = meta(session, GOBLINS)
        assert stored.initiative == 20
        assert stored.initiative_override is True

    @pytest.mark.asyncio
    async def test_rebases_from_rolls_after_finalize(self, coordinator, session):
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})
        await coordinator.finalize(GOBLINS)

        result = await coordinator.set_group_initiative(GOBLINS, 20)

        assert result["delta"] == 6
        assert initiatives(session, GOBLINS) == {"goblin-1": 24, "goblin-2": 20, "goblin-3": 16}
        assert meta(session, GOBLINS).rolls == {}

    @pytest.mark.asyncio
    async def test_empty_group_left_alone(self, coordinator, session):
        await session.commit(group_updates={"gr-empty": {"name": "Reserves"}})
        commits = session.commit_count

        assert await coordinator.set_group_initiative("gr-empty", 12) is None

        assert session.commit_count == commits
        stored = meta(session, "gr-empty")
        assert stored.initiative is None
        assert stored.initiative_override is False

    @pytest.mark.asyncio
    async def test_value_stored_without_rounding(self, coordinator, session):
        set_initiatives(session, {"wolf-1": 15, "wolf-2": 14})

        await coordinator.set_group_initiative(WOLVES, 10.5)

        assert initiatives(session, WOLVES) == {"wolf-1": 11, "wolf-2": 10}
        assert meta(session, WOLVES).initiative == 10.5

    @pytest.mark.asyncio
    async def test_unrolled_members_count_as_zero(self, coordinator, session):
        set_initiatives(session, {"wolf-1": 16})

        await coordinator.set_group_initiative(WOLVES, 10)

        assert initiatives(session, WOLVES) == {"wolf-1": 18, "wolf-2": 2}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [float("nan"), float("inf"), "abc", None])
    async def test_rejects_non_finite(self, coordinator, session, value):
        commits = session.commit_count
        with pytest.raises(ValidationError):
            await coordinator.set_group_initiative(GOBLINS, value)
        assert session.commit_count == commits

    @pytest.mark.asyncio
    async def test_override_survives_finalize(self, coordinator, session):
        """A manual value is not replaced by the rounded mean on the next finalize."""
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})
        await coordinator.set_group_initiative(GOBLINS, 20)

        assert await coordinator.finalize(GOBLINS) is None
        await session.set_initiative("goblin-1", 30)

        assert meta(session, GOBLINS).initiative == 20
        assert meta(session, GOBLINS).initiative_override is True

    @pytest.mark.asyncio
    async def test_explicit_roll_clears_override(self, coordinator, session, roller):
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})
        await coordinator.set_group_initiative(GOBLINS, 20)

        result = await coordinator.roll_and_finalize(GOBLINS)

        assert roller.formulas == []
        assert result.aggregate == 20
        assert meta(session, GOBLINS).initiative_override is False

    @pytest.mark.asyncio
    async def test_dropped_while_roll_in_flight(self, coordinator, session):
        coordinator.guards.try_skip_group(GOBLINS)
        assert await coordinator.set_group_initiative(GOBLINS, 12) is None
        assert meta(session, GOBLINS).initiative is None


@pytest.mark.initiative
class TestResetGroupInitiative:
    @pytest.mark.asyncio
    async def test_clears_members_and_aggregate(self, coordinator, session):
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})
        await coordinator.finalize(GOBLINS)

        cleared = await coordinator.reset_group_initiative(GOBLINS)

        assert cleared == 3
        assert set(initiatives(session, GOBLINS).values()) == {None}
        stored = meta(session, GOBLINS)
        assert stored.initiative is None
        assert stored.name == "Goblin Raiders"
        assert all(session.get_member(m).group_id == GOBLINS for m in ("goblin-1", "goblin-2", "goblin-3"))

    @pytest.mark.asyncio
    async def test_reset_clears_override(self, coordinator, session):
        set_initiatives(session, {"goblin-1": 18, "goblin-2": 14, "goblin-3": 10})
        await coordinator.set_group_initiative(GOBLINS, 20)

        await coordinator.reset_group_initiative(GOBLINS)

        assert meta(session, GOBLINS).initiative_override is False


def crowded_session(count):
    """``count`` single-member groups, none rolled yet."""
    members = [make_member(f"scout-{i:02d}", group_id=f"gr-{i:02d}") for i in range(count)]
    groups = {f"gr-{i:02d}": {"name": f"Patrol {i}"} for i in range(count)}
    return InMemoryCombatSession(members=members, groups=groups)


@pytest.mark.initiative
class TestGroupLimit:
    """Only groups holding a computed aggregate count toward the rank limit."""

    @pytest.mark.asyncio
    async def test_ranked_group_limit(self, roller, feed, config):
        session = crowded_session(MAX_GROUPS + 1)
        coordinator = SquadCoordinator(session, roller=roller, notifier=feed, config=config)
        for i in range(MAX_GROUPS):
            set_initiatives(session, {f"scout-{i:02d}": i + 1})
            assert await coordinator.finalize(f"gr-{i:02d}") is not None

        set_initiatives(session, {f"scout-{MAX_GROUPS:02d}": 30})
        with pytest.raises(ValidationError):
            await coordinator.finalize(f"gr-{MAX_GROUPS:02d}")
        assert coordinator.guards.mutex is False

    @pytest.mark.asyncio
    async def test_overridden_group_takes_no_rank(self, roller, feed, config):
        session = crowded_session(MAX_GROUPS + 1)
        coordinator = SquadCoordinator(session, roller=roller, notifier=feed, config=config).attach()
        for i in range(MAX_GROUPS):
            set_initiatives(session, {f"scout-{i:02d}": i + 1})
            await coordinator.finalize(f"gr-{i:02d}")
        await coordinator.set_group_initiative(f"gr-{MAX_GROUPS:02d}", 12)

        await session.set_initiative("scout-00", 25)

        assert meta(session, "gr-00").initiative == 25
        assert meta(session, "gr-00").rank == 0
        assert meta(session, f"gr-{MAX_GROUPS:02d}").rank is None
