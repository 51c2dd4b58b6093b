"""Request models for administrative and client-facing operations."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from experiments_core.models.flag import FlagType, SegmentRules

# ============================================================================
# Feature Flags
# ============================================================================


class CreateFlagRequest(BaseModel):
    """Request model for creating a feature flag."""

    key: str = Field(..., description="Unique, stable flag key", min_length=1, max_length=255)
    name: str = Field(..., description="Human-readable name", min_length=1)
    description: str = Field(default="", description="What the flag controls")
    flag_type: FlagType = Field(..., description="Evaluation strategy")
    enabled: bool = Field(default=False, description="Static default (boolean and segment flags)")
    rollout_percentage: int = Field(default=0, ge=0, le=100, description="Rollout share for percentage flags")
    allowed_subject_ids: List[str] = Field(default_factory=list, description="Subjects always enabled")
    blocked_subject_ids: List[str] = Field(default_factory=list, description="Subjects always disabled")
    segment_rules: Optional[SegmentRules] = Field(default=None, description="Targeting rules for segment flags")
    tags: List[str] = Field(default_factory=list)


class UpdateFlagRequest(BaseModel):
    """Request model for updating a feature flag. Unset fields are left unchanged."""

    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    enabled: Optional[bool] = None
    rollout_percentage: Optional[int] = Field(default=None, ge=0, le=100)
    allowed_subject_ids: Optional[List[str]] = None
    blocked_subject_ids: Optional[List[str]] = None
    segment_rules: Optional[SegmentRules] = None
    tags: Optional[List[str]] = None


class CreateOverrideRequest(BaseModel):
    """Request model for pinning a flag result for one subject."""

    subject_id: str = Field(..., min_length=1)
    enabled: bool = False
    reason: str = Field(..., min_length=1, description="Audit reason for the override")
    expires_at: Optional[str] = Field(default=None, description="Expiry timestamp (ISO 8601)")


# ============================================================================
# Experiments
# ============================================================================


class CreateVariantInput(BaseModel):
    """A variant defined as part of experiment creation."""

    key: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    is_control: bool = False
    weight: int = Field(..., ge=0, le=100, description="Traffic weight; all weights must sum to 100")
    config: Dict[str, Any] = Field(default_factory=dict, description="Variant-specific configuration")


class CreateExperimentRequest(BaseModel):
    """Request model for creating an experiment in draft status."""

    key: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1)
    description: str = ""
    hypothesis: str = Field(..., min_length=1)
    traffic_percentage: int = Field(..., ge=0, le=100, description="Share of eligible subjects enrolled")
    primary_metric: str = Field(..., min_length=1)
    secondary_metrics: List[str] = Field(default_factory=list)
    min_sample_size: Optional[int] = Field(default=None, ge=0, description="Minimum subjects per variant")
    confidence_level: Optional[float] = Field(default=None, ge=0, lt=1)
    segment_rules: Optional[SegmentRules] = None
    variants: List[CreateVariantInput] = Field(..., min_length=2)


class TrackEventRequest(BaseModel):
    """Request model for recording an experiment event."""

    experiment_key: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1, description="e.g. 'impression', 'click', 'conversion'")
    event_value: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
