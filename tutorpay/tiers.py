"""
Tier registry.

Tier definitions live in the ``teacher_tiers`` table and are edited only
through the admin API. Components work on an immutable ``TierRegistry``
snapshot passed to them explicitly.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import ValidationError
from .models import TierDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tier:
    tier: str
    level: int
    display_name: str
    min_hours_taught: float
    min_rating: float
    min_retention_rate: float
    min_students_for_retention: int
    teacher_hourly_rate: Decimal
    student_hourly_price: Decimal
    auto_eligible: bool = True
    accepted_language_levels: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_model(cls, row: TierDefinition) -> "Tier":
        return cls(
            tier=row.tier,
            level=row.level,
            display_name=row.display_name,
            min_hours_taught=row.min_hours_taught,
            min_rating=row.min_rating,
            min_retention_rate=row.min_retention_rate,
            min_students_for_retention=row.min_students_for_retention,
            teacher_hourly_rate=Decimal(row.teacher_hourly_rate),
            student_hourly_price=Decimal(row.student_hourly_price),
            auto_eligible=row.auto_eligible,
            accepted_language_levels=tuple(row.accepted_language_levels or ()),
        )

    def as_dict(self) -> Dict:
        return {
            "tier": self.tier,
            "level": self.level,
            "display_name": self.display_name,
            "min_hours_taught": self.min_hours_taught,
            "min_rating": self.min_rating,
            "min_retention_rate": self.min_retention_rate,
            "min_students_for_retention": self.min_students_for_retention,
            "teacher_hourly_rate": self.teacher_hourly_rate,
            "student_hourly_price": self.student_hourly_price,
            "auto_eligible": self.auto_eligible,
            "accepted_language_levels": list(self.accepted_language_levels),
        }


DEFAULT_TIERS = (
    Tier("newcomer", 1, "Newcomer", 0, 0, 0, 5, Decimal("5.00"), Decimal("15.00")),
    Tier("apprentice", 2, "Apprentice", 50, 4.0, 0.60, 5, Decimal("6.00"), Decimal("15.00")),
    Tier("skilled", 3, "Skilled", 150, 4.2, 0.65, 5, Decimal("8.00"), Decimal("15.00")),
    Tier("expert", 4, "Expert", 250, 4.5, 0.70, 5, Decimal("8.50"), Decimal("16.50"),
         auto_eligible=False, accepted_language_levels=("fluent", "native")),
    Tier("master", 5, "Master", 500, 4.7, 0.80, 5, Decimal("10.00"), Decimal("18.00"),
         auto_eligible=False, accepted_language_levels=("native",)),
)


class TierRegistry:
    """Ordered, read-only set of tiers."""

    def __init__(self, tiers: Iterable[Tier]):
        ordered = sorted(tiers, key=lambda t: t.level)
        if not ordered:
            raise ValidationError("Tier registry is empty")
        seen = set()
        for lower, higher in zip(ordered, ordered[1:]):
            if lower.level == higher.level:
                raise ValidationError(f"Tiers {lower.tier} and {higher.tier} share level {lower.level}")
            if higher.teacher_hourly_rate < lower.teacher_hourly_rate:
                raise ValidationError(
                    f"Tier {higher.tier} pays less than lower tier {lower.tier}",
                    details={"tier": higher.tier},
                )
        for t in ordered:
            if t.tier in seen:
                raise ValidationError(f"Duplicate tier {t.tier}")
            seen.add(t.tier)
        self._tiers: Tuple[Tier, ...] = tuple(ordered)
        self._by_name = {t.tier: t for t in ordered}

    def __iter__(self):
        return iter(self._tiers)

    def __len__(self):
        return len(self._tiers)

    def __contains__(self, name) -> bool:
        return name in self._by_name

    def get(self, name: str) -> Tier:
        try:
            return self._by_name[name]
        except KeyError:
            raise ValidationError(f"Invalid tier: {name}", details={"tier": name})

    def find(self, name: Optional[str]) -> Optional[Tier]:
        return self._by_name.get(name)

    def lowest(self) -> Tier:
        return self._tiers[0]

    def highest_first(self) -> List[Tier]:
        return list(reversed(self._tiers))


async def load_tier_registry() -> TierRegistry:
    """Snapshot the tier table, falling back to the defaults when it is empty."""
    rows = await TierDefinition.all().order_by("level")
    if not rows:
        logger.warning("No tiers configured, using default tier structure")
        return TierRegistry(DEFAULT_TIERS)
    return TierRegistry(Tier.from_model(row) for row in rows)


async def initialize_tier_structure():
    """
    Initialize default tier structure if none exists.
    """
    if await TierDefinition.all().exists():
        return
    for tier in DEFAULT_TIERS:
        values = tier.as_dict()
        await TierDefinition.create(**values)
    logger.info(f"Initialized default tier structure ({len(DEFAULT_TIERS)} tiers)")


async def upsert_tier(data: Dict) -> Tier:
    """
    Create or update a tier definition from the admin surface.

    The resulting registry must still be ordered with non-decreasing rates;
    otherwise nothing is written.

    Raises:
        ValidationError: missing fields or a rate that breaks the ordering
    """
    required = ("tier", "level", "teacher_hourly_rate", "student_hourly_price")
    missing = [name for name in required if data.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Missing tier fields: {', '.join(missing)}")

    try:
        candidate = Tier(
            tier=str(data["tier"]),
            level=int(data["level"]),
            display_name=data.get("display_name") or str(data["tier"]).title(),
            min_hours_taught=float(data.get("min_hours_taught", 0)),
            min_rating=float(data.get("min_rating", 0)),
            min_retention_rate=float(data.get("min_retention_rate", 0)),
            min_students_for_retention=int(data.get("min_students_for_retention", 5)),
            teacher_hourly_rate=Decimal(str(data["teacher_hourly_rate"])),
            student_hourly_price=Decimal(str(data["student_hourly_price"])),
            auto_eligible=bool(data.get("auto_eligible", True)),
            accepted_language_levels=tuple(data.get("accepted_language_levels") or ()),
        )
    except (TypeError, ValueError, ArithmeticError) as e:
        raise ValidationError(f"Malformed tier definition: {e}")

    if candidate.student_hourly_price < candidate.teacher_hourly_rate:
        raise ValidationError(f"Tier {candidate.tier} pays the teacher more than the student is charged")

    await initialize_tier_structure()
    current = await load_tier_registry()
    others = [t for t in current if t.tier != candidate.tier]
    TierRegistry(others + [candidate])

    values = candidate.as_dict()
    row = await TierDefinition.get_or_none(tier=candidate.tier)
    if row is None:
        await TierDefinition.create(**values)
        logger.info(f"Created tier {candidate.tier} (level {candidate.level})")
    else:
        await row.update_from_dict(values).save()
        logger.info(f"Updated tier {candidate.tier}")
    return candidate
