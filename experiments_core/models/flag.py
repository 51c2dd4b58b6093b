"""Feature flag domain model.

Flags are runtime toggles evaluated per subject. A flag carries one of four
evaluation strategies (``FlagType``) and a lifecycle ``FlagStatus``; only
``active`` flags are ever loaded into the evaluation cache. Flags are never
deleted: ``archived`` is terminal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from experiments_core.core.clock import utc_now


class FlagType(str, Enum):
    """Evaluation strategy of a flag."""

    BOOLEAN = "boolean"  # Simple on/off
    PERCENTAGE = "percentage"  # Gradual rollout percentage
    USER_LIST = "user_list"  # Specific subject IDs
    SEGMENT = "segment"  # Attribute-based segment


class FlagStatus(str, Enum):
    """Lifecycle status of a flag."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


@dataclass
class SegmentRules:
    """Conjunctive targeting predicate over a ``UserContext``.

    Every populated field must be satisfied; empty lists and ``None``
    thresholds are ignored, so an empty rule set matches everyone.

    Attributes:
        roles: Allowed subject roles (e.g. ["rider", "driver"])
        countries: Allowed ISO country codes
        cities: Allowed city names
        platforms: Allowed platforms (["ios", "android", "web"])
        loyalty_tiers: Allowed loyalty tiers (["gold", "platinum"])
        min_rides: Minimum completed rides (inclusive)
        max_rides: Maximum completed rides (inclusive)
        min_rating: Minimum subject rating (inclusive)
        min_account_age_days: Minimum days since registration (inclusive)
        min_app_version: Minimum client version (inclusive)
    """

    roles: List[str] = field(default_factory=list)
    countries: List[str] = field(default_factory=list)
    cities: List[str] = field(default_factory=list)
    platforms: List[str] = field(default_factory=list)
    loyalty_tiers: List[str] = field(default_factory=list)
    min_rides: Optional[int] = None
    max_rides: Optional[int] = None
    min_rating: Optional[float] = None
    min_account_age_days: Optional[int] = None
    min_app_version: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["SegmentRules"]:
        """Create rules from a JSON dictionary (``None`` stays ``None``)."""
        if data is None:
            return None
        return cls(
            roles=list(data.get("roles") or []),
            countries=list(data.get("countries") or []),
            cities=list(data.get("cities") or []),
            platforms=list(data.get("platforms") or []),
            loyalty_tiers=list(data.get("loyalty_tiers") or []),
            min_rides=data.get("min_rides"),
            max_rides=data.get("max_rides"),
            min_rating=data.get("min_rating"),
            min_account_age_days=data.get("min_account_age_days"),
            min_app_version=data.get("min_app_version"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "roles": list(self.roles),
            "countries": list(self.countries),
            "cities": list(self.cities),
            "platforms": list(self.platforms),
            "loyalty_tiers": list(self.loyalty_tiers),
            "min_rides": self.min_rides,
            "max_rides": self.max_rides,
            "min_rating": self.min_rating,
            "min_account_age_days": self.min_account_age_days,
            "min_app_version": self.min_app_version,
        }


@dataclass
class FeatureFlag:
    """A named capability toggle.

    ``flag_type`` is normally a ``FlagType``; a row written by a newer
    version may carry a type string this version does not know, which
    evaluates with the static default.
    """

    id: str
    key: str
    name: str
    flag_type: Union[FlagType, str]
    status: FlagStatus = FlagStatus.ACTIVE
    description: str = ""
    enabled: bool = False
    rollout_percentage: int = 0
    allowed_subject_ids: List[str] = field(default_factory=list)
    blocked_subject_ids: List[str] = field(default_factory=list)
    segment_rules: Optional[SegmentRules] = None
    tags: List[str] = field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status == FlagStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "flag_type": getattr(self.flag_type, "value", self.flag_type),
            "status": self.status.value,
            "enabled": self.enabled,
            "rollout_percentage": self.rollout_percentage,
            "allowed_subject_ids": list(self.allowed_subject_ids),
            "blocked_subject_ids": list(self.blocked_subject_ids),
            "segment_rules": self.segment_rules.to_dict() if self.segment_rules else None,
            "tags": list(self.tags),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class FlagOverride:
    """Per-(flag, subject) pinned evaluation result."""

    id: str
    flag_id: str
    subject_id: str
    enabled: bool
    reason: str
    expires_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if override has expired."""
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "flag_id": self.flag_id,
            "subject_id": self.subject_id,
            "enabled": self.enabled,
            "reason": self.reason,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
