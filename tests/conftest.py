"""
Squad Engine - Test Configuration and Fixtures
Shared test utilities and fixtures for pytest.
"""
import pytest
from typing import Dict, List, Any, Optional

from squad_engine.core.coordinator import SquadCoordinator
from squad_engine.core.dice import RollOutcome, parse_formula
from squad_engine.core.notifications import NotificationFeed
from squad_engine.core.session import InMemoryCombatSession, Member
from squad_engine.core.squad_config import SquadConfig


GOBLINS = "gr-goblins"
WOLVES = "gr-wolves"


# ==================== Dice Fixtures ====================

class ScriptedRoller:
    """
    Roll service that reads die faces from a script.

    Each die rolled takes the next scripted face; once the script runs out
    every die shows ``default``.
    """

    def __init__(self, faces: Optional[List[int]] = None, default: int = 10):
        self.faces = list(faces or [])
        self.default = default
        self.formulas: List[str] = []

    def script(self, *faces: int) -> None:
        self.faces.extend(faces)

    async def evaluate(self, formula: str) -> RollOutcome:
        self.formulas.append(formula)
        count, sides, keep, modifier = parse_formula(formula)
        dice = [self.faces.pop(0) if self.faces else self.default for _ in range(count)]
        if keep == "kh":
            kept = max(dice)
        elif keep == "kl":
            kept = min(dice)
        else:
            kept = dice[0] if count == 1 else None
        total = (kept if keep else sum(dice)) + modifier
        return RollOutcome(formula=formula, total=total, dice=dice, kept=kept, modifier=modifier)


class FailingNotifier:
    """Notifier whose every publish fails."""

    def __init__(self):
        self.attempts = 0

    async def publish(self, kind: str, payload: Dict[str, Any]) -> None:
        self.attempts += 1
        raise RuntimeError("chat unavailable")


@pytest.fixture
def roller() -> ScriptedRoller:
    return ScriptedRoller()


@pytest.fixture
def feed() -> NotificationFeed:
    return NotificationFeed()


@pytest.fixture
def config() -> SquadConfig:
    """Engine config with no settle delay so bulk tests run instantly."""
    return SquadConfig(bulk_settle_delay_ms=0)


# ==================== Combatant Fixtures ====================

def make_member(member_id: str, name: Optional[str] = None, **fields: Any) -> Member:
    """Build a combatant with sensible defaults."""
    data = {"id": member_id, "name": name or member_id.replace("-", " ").title(), "hp": 7}
    data.update(fields)
    return Member.from_dict(data)


@pytest.fixture
def members() -> List[Member]:
    """Three goblins, two wolves and an ungrouped hero, none rolled yet."""
    return [
        make_member("goblin-1", dex_mod=2, dex_score=14, group_id=GOBLINS),
        make_member("goblin-2", dex_mod=2, dex_score=14, group_id=GOBLINS),
        make_member("goblin-3", dex_mod=2, dex_score=15, group_id=GOBLINS),
        make_member("wolf-1", dex_mod=2, dex_score=15, hp=11, group_id=WOLVES),
        make_member("wolf-2", dex_mod=2, dex_score=15, hp=11, group_id=WOLVES),
        make_member("hero", dex_mod=3, dex_score=16, hp=30),
    ]


@pytest.fixture
def stored_groups() -> Dict[str, Dict[str, Any]]:
    return {
        GOBLINS: {"name": "Goblin Raiders"},
        WOLVES: {"name": "Wolf Pack"},
    }


@pytest.fixture
def session(members, stored_groups) -> InMemoryCombatSession:
    return InMemoryCombatSession(session_id="encounter-1", members=members, groups=stored_groups)


@pytest.fixture
def coordinator(session, roller, feed, config) -> SquadCoordinator:
    """A coordinator attached to the encounter with GM authority."""
    return SquadCoordinator(session, roller=roller, notifier=feed, config=config).attach()


@pytest.fixture
def make_coordinator(session, roller, feed, config):
    """Factory for coordinators with custom authority or config."""
    def _make(authority=None, **overrides):
        cfg = SquadConfig.from_dict({**config.to_dict(), **overrides}) if overrides else config
        return SquadCoordinator(
            session, roller=roller, notifier=feed, config=cfg, authority=authority
        ).attach()
    return _make


def set_initiatives(session: InMemoryCombatSession, values: Dict[str, float]) -> None:
    """Write initiative values directly, bypassing notifications."""
    for member_id, value in values.items():
        session.get_member(member_id).initiative = value


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "initiative: Group initiative tests")
    config.addinivalue_line("markers", "morale: Morale system tests")
    config.addinivalue_line("markers", "api: HTTP API tests")
