"""
Per-encounter engine configuration.

Each coordinator receives its own SquadConfig; nothing here is global. The
defaults come from the environment (see squad_engine.config) but tests and
hosts may build one directly.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from squad_engine.core.errors import ValidationError

MORALE_EFFECTS = ("frightened", "fleeing")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class SquadConfig:
    """
    Attributes:
        morale_enabled: React to hp changes and deletions with auto-prompts
        morale_auto_prompt_threshold: Percent of starting size at or below which
            a morale prompt fires (0 disables auto-prompts)
        mob_confidence_divisor: Living members per +1 morale bonus
        morale_status_effect: Effect applied on a failed check
        morale_effect_duration: Rounds the effect lasts (0 = until removed)
        bulk_settle_delay_ms: Pause after a bulk roll before finalizing groups
        default_group_pinned: Pinned state of newly created groups
    """
    morale_enabled: bool = True
    morale_auto_prompt_threshold: int = 50
    mob_confidence_divisor: int = 3
    morale_status_effect: str = "frightened"
    morale_effect_duration: int = 0
    bulk_settle_delay_ms: int = 100
    default_group_pinned: bool = True

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if not _is_int(self.mob_confidence_divisor) or self.mob_confidence_divisor < 1:
            raise ValidationError(
                "mob_confidence_divisor", "Must be an integer of at least 1",
                value=self.mob_confidence_divisor,
            )
        if not _is_int(self.morale_auto_prompt_threshold) or not 0 <= self.morale_auto_prompt_threshold <= 100:
            raise ValidationError(
                "morale_auto_prompt_threshold", "Must be an integer between 0 and 100",
                value=self.morale_auto_prompt_threshold,
            )
        if self.morale_status_effect not in MORALE_EFFECTS:
            raise ValidationError(
                "morale_status_effect", f"Must be one of {', '.join(MORALE_EFFECTS)}",
                value=self.morale_status_effect,
            )
        if not _is_int(self.morale_effect_duration) or self.morale_effect_duration < 0:
            raise ValidationError(
                "morale_effect_duration", "Must be a non-negative integer",
                value=self.morale_effect_duration,
            )
        if not _is_int(self.bulk_settle_delay_ms) or self.bulk_settle_delay_ms < 0:
            raise ValidationError(
                "bulk_settle_delay_ms", "Must be a non-negative integer",
                value=self.bulk_settle_delay_ms,
            )
        for name in ("morale_enabled", "default_group_pinned"):
            if not isinstance(getattr(self, name), bool):
                raise ValidationError(name, "Must be true or false", value=getattr(self, name))

    @property
    def settle_delay_seconds(self) -> float:
        return self.bulk_settle_delay_ms / 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "morale_enabled": self.morale_enabled,
            "morale_auto_prompt_threshold": self.morale_auto_prompt_threshold,
            "mob_confidence_divisor": self.mob_confidence_divisor,
            "morale_status_effect": self.morale_status_effect,
            "morale_effect_duration": self.morale_effect_duration,
            "bulk_settle_delay_ms": self.bulk_settle_delay_ms,
            "default_group_pinned": self.default_group_pinned,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SquadConfig":
        data = data or {}
        defaults = cls()
        return cls(**{key: data.get(key, value) for key, value in defaults.to_dict().items()})

    @classmethod
    def from_settings(cls, settings: Any) -> "SquadConfig":
        """Build from the environment-backed Settings object."""
        return cls(
            morale_enabled=settings.SQUAD_MORALE_ENABLED,
            morale_auto_prompt_threshold=settings.SQUAD_MORALE_THRESHOLD,
            mob_confidence_divisor=settings.SQUAD_MOB_DIVISOR,
            morale_status_effect=settings.SQUAD_MORALE_EFFECT,
            morale_effect_duration=settings.SQUAD_MORALE_DURATION,
            bulk_settle_delay_ms=settings.SQUAD_SETTLE_DELAY_MS,
            default_group_pinned=settings.SQUAD_DEFAULT_PINNED,
        )
