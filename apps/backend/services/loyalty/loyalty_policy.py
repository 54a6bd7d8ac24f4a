"""
Loyalty Policy (Canonical)
==========================

Single source of truth for the loyalty program rules.

Key requirements implemented:
- Tier qualification needs ALL configured metric thresholds of a tier
  (lifetime spend, visit count, current-year spend) at the same time.
- Points issuance is deterministic: floor(amount / points_per_unit), then the
  tier point multiplier, again floored. Never rounds up.
- Non-punitive: downgrades are never applied automatically.

Non-goals:
- No DB access (pure domain rules).
- No HTTP / FastAPI logic.

All monetary values are integers in minor currency units.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, List, Optional


TIER_ORDER: List[str] = ["BRONZE", "SILVER", "GOLD", "PLATINUM"]

# metric name on the account -> key used in next-tier requirement payloads
TIER_METRICS = {
    "lifetime_spent": "lifetimeSpent",
    "total_visits": "totalVisits",
    "current_year_spent": "yearlySpent",
}


def tier_rank(tier_key: str) -> int:
    try:
        return TIER_ORDER.index(tier_key)
    except ValueError:
        return 0


def _to_int(v: Any, default: Optional[int] = None) -> Optional[int]:
    if v is None:
        return default
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class TierBenefits:
    point_multiplier: Decimal = Decimal("1")
    discount_percentage: int = 0
    free_item_threshold: int = 0
    special_offers: List[str] = field(default_factory=list)
    priority_support: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "point_multiplier": str(self.point_multiplier),
            "discount_percentage": self.discount_percentage,
            "free_item_threshold": self.free_item_threshold,
            "special_offers": list(self.special_offers),
            "priority_support": self.priority_support,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "TierBenefits":
        data = data or {}
        return TierBenefits(
            point_multiplier=Decimal(str(data.get("point_multiplier", "1"))),
            discount_percentage=int(data.get("discount_percentage", 0)),
            free_item_threshold=int(data.get("free_item_threshold", 0)),
            special_offers=[str(x) for x in (data.get("special_offers") or [])],
            priority_support=bool(data.get("priority_support", False)),
        )


@dataclass(frozen=True)
class Tier:
    """
    A tier is reached when every threshold that is set is met.
    A threshold left as None is not required for that tier.
    """
    key: str
    name: str
    min_lifetime_spent: Optional[int] = None
    min_total_visits: Optional[int] = None
    min_current_year_spent: Optional[int] = None

    benefits: TierBenefits = field(default_factory=TierBenefits)
    birthday_bonus: int = 0

    @property
    def rank(self) -> int:
        return tier_rank(self.key)

    def thresholds(self) -> Dict[str, Optional[int]]:
        return {
            "lifetime_spent": self.min_lifetime_spent,
            "total_visits": self.min_total_visits,
            "current_year_spent": self.min_current_year_spent,
        }

    def is_met_by(self, metrics: Dict[str, int]) -> bool:
        for metric, required in self.thresholds().items():
            if required is None:
                continue
            if int(metrics.get(metric, 0) or 0) < required:
                return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "min_lifetime_spent": self.min_lifetime_spent,
            "min_total_visits": self.min_total_visits,
            "min_current_year_spent": self.min_current_year_spent,
            "benefits": self.benefits.to_dict(),
            "birthday_bonus": self.birthday_bonus,
        }


@dataclass(frozen=True)
class PointsRule:
    """
    points_per_unit:
        minor currency units needed for one point (1000 => 1 point per 1000 spent).
    points_expiry_days:
        earned points older than this are expired by the expiry job (None => never).
    """
    points_per_unit: int = 1000
    points_expiry_days: Optional[int] = 365

    def to_dict(self) -> Dict[str, Any]:
        return {
            "points_per_unit": self.points_per_unit,
            "points_expiry_days": self.points_expiry_days,
        }


@dataclass(frozen=True)
class LoyaltyPolicy:
    """
    Top-level program configuration consumed by the ledger and tier engine.
    """
    program_name: str = "Loyalty Club"
    currency: str = "IRR"

    tiers: List[Tier] = field(default_factory=list)
    points_rule: PointsRule = field(default_factory=PointsRule)

    version: str = "2026-10-01-canonical"

    def __post_init__(self) -> None:
        if not self.tiers:
            object.__setattr__(self, "tiers", self.default_tiers())
        object.__setattr__(self, "tiers", sorted(self.tiers, key=lambda t: t.rank))
        self._validate()

    # -----------------------------
    # Defaults
    # -----------------------------
    @staticmethod
    def default_tiers() -> List[Tier]:
        return [
            Tier(
                key="BRONZE",
                name="Bronze",
                benefits=TierBenefits(),
                birthday_bonus=200,
            ),
            Tier(
                key="SILVER",
                name="Silver",
                min_lifetime_spent=5_000_000,
                min_total_visits=30,
                min_current_year_spent=3_000_000,
                benefits=TierBenefits(
                    point_multiplier=Decimal("1.2"),
                    discount_percentage=5,
                    free_item_threshold=10,
                    special_offers=["Birthday discount", "Monthly special offer"],
                ),
                birthday_bonus=500,
            ),
            Tier(
                key="GOLD",
                name="Gold",
                min_lifetime_spent=20_000_000,
                min_total_visits=100,
                min_current_year_spent=10_000_000,
                benefits=TierBenefits(
                    point_multiplier=Decimal("1.5"),
                    discount_percentage=10,
                    free_item_threshold=8,
                    special_offers=["Birthday discount", "Weekly special offer", "Early access"],
                    priority_support=True,
                ),
                birthday_bonus=1000,
            ),
            Tier(
                key="PLATINUM",
                name="Platinum",
                min_lifetime_spent=50_000_000,
                min_total_visits=200,
                min_current_year_spent=20_000_000,
                benefits=TierBenefits(
                    point_multiplier=Decimal("2"),
                    discount_percentage=15,
                    free_item_threshold=5,
                    special_offers=[
                        "Birthday discount",
                        "Daily special offer",
                        "VIP access",
                        "Free consultation",
                    ],
                    priority_support=True,
                ),
                birthday_bonus=2000,
            ),
        ]

    # -----------------------------
    # Validation
    # -----------------------------
    def _validate(self) -> None:
        if not self.program_name.strip():
            raise ValueError("program_name cannot be empty")
        if not self.currency.strip():
            raise ValueError("currency cannot be empty")

        pr = self.points_rule
        if pr.points_per_unit <= 0:
            raise ValueError("points_per_unit must be > 0")
        if pr.points_expiry_days is not None and pr.points_expiry_days <= 0:
            raise ValueError("points_expiry_days must be > 0 if set")

        seen = set()
        for t in self.tiers:
            if t.key not in TIER_ORDER:
                raise ValueError(f"unknown tier key: {t.key}")
            if t.key in seen:
                raise ValueError(f"duplicate tier key: {t.key}")
            seen.add(t.key)
            if t.benefits.point_multiplier <= Decimal("0"):
                raise ValueError(f"tier {t.key}: point_multiplier must be > 0")
            if t.birthday_bonus < 0:
                raise ValueError(f"tier {t.key}: birthday_bonus cannot be negative")
            for metric, required in t.thresholds().items():
                if required is not None and required < 0:
                    raise ValueError(f"tier {t.key}: {metric} threshold cannot be negative")

        first = self.tiers[0]
        if first.key != TIER_ORDER[0]:
            raise ValueError("tiers must include the BRONZE base tier")
        if any(v for v in first.thresholds().values()):
            raise ValueError("BRONZE tier cannot have qualification thresholds")

        # thresholds must not decrease while climbing
        for metric in TIER_METRICS:
            last = 0
            for t in self.tiers:
                required = t.thresholds()[metric]
                if required is None:
                    continue
                if required < last:
                    raise ValueError(f"tier {t.key}: {metric} threshold lower than a previous tier")
                last = required

    # -----------------------------
    # Tier lookup
    # -----------------------------
    def tier(self, key: str) -> Tier:
        for t in self.tiers:
            if t.key == key:
                return t
        return self.tiers[0]

    def next_tier(self, key: str) -> Optional[Tier]:
        current = self.tier(key)
        for t in self.tiers:
            if t.rank > current.rank:
                return t
        return None

    # -----------------------------
    # Points logic
    # -----------------------------
    def points_for_amount(self, amount: int) -> int:
        """
        floor(amount / points_per_unit); non-positive amounts earn nothing.
        """
        amount = int(amount or 0)
        if amount <= 0:
            return 0
        return amount // self.points_rule.points_per_unit

    def points_for_purchase(self, amount: int, tier_key: str) -> int:
        base = self.points_for_amount(amount)
        multiplier = self.tier(tier_key).benefits.point_multiplier
        return int((Decimal(base) * multiplier).to_integral_value(rounding=ROUND_FLOOR))

    def birthday_bonus(self, tier_key: str) -> int:
        return self.tier(tier_key).birthday_bonus

    # -----------------------------
    # Serialization
    # -----------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "program_name": self.program_name,
            "currency": self.currency,
            "tiers": [t.to_dict() for t in self.tiers],
            "points_rule": self.points_rule.to_dict(),
            "version": self.version,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "LoyaltyPolicy":
        """
        Build a policy from stored JSON. Missing fields fall back to defaults.
        """
        data = data or {}

        tiers: List[Tier] = []
        for t in data.get("tiers") or []:
            if not isinstance(t, dict):
                continue
            key = str(t.get("key", "")).strip().upper()
            tiers.append(
                Tier(
                    key=key,
                    name=str(t.get("name", "")).strip() or key.title(),
                    min_lifetime_spent=_to_int(t.get("min_lifetime_spent")),
                    min_total_visits=_to_int(t.get("min_total_visits")),
                    min_current_year_spent=_to_int(t.get("min_current_year_spent")),
                    benefits=TierBenefits.from_dict(t.get("benefits") or {}),
                    birthday_bonus=int(t.get("birthday_bonus", 0) or 0),
                )
            )

        pr_in = data.get("points_rule") if isinstance(data.get("points_rule"), dict) else {}
        default_rule = PointsRule()
        points_rule = PointsRule(
            points_per_unit=int(pr_in.get("points_per_unit", default_rule.points_per_unit)),
            points_expiry_days=_to_int(pr_in.get("points_expiry_days", default_rule.points_expiry_days)),
        )

        return LoyaltyPolicy(
            program_name=str(data.get("program_name", "Loyalty Club")),
            currency=str(data.get("currency", "IRR")),
            tiers=tiers,
            points_rule=points_rule,
            version=str(data.get("version", "2026-10-01-canonical")),
        )

    @staticmethod
    def from_file(path: str) -> "LoyaltyPolicy":
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        return LoyaltyPolicy.from_dict(data.get("loyalty", data))
