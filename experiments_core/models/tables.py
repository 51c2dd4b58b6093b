"""SQLAlchemy table definitions for the SQL-backed store.

Rows are converted to and from the domain dataclasses by
``experiments_core.store.sql``; nothing outside the store touches them.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text

from experiments_core.core.database import Base


class FeatureFlagRow(Base):
    """Feature flag row."""

    __tablename__ = "feature_flags"
    __table_args__ = (Index("ix_feature_flags_status", "status"),)

    id = Column(String(36), primary_key=True)
    key = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    flag_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    enabled = Column(Boolean, nullable=False, default=False)
    rollout_percentage = Column(Integer, nullable=False, default=0)
    allowed_subject_ids = Column(JSON, nullable=True)  # Array of subject IDs
    blocked_subject_ids = Column(JSON, nullable=True)  # Array of subject IDs
    segment_rules = Column(JSON, nullable=True)
    tags = Column(JSON, nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<FeatureFlagRow(key='{self.key}', status={self.status}, type={self.flag_type})>"


class FlagOverrideRow(Base):
    """Per-subject flag override row. One row per (flag, subject)."""

    __tablename__ = "flag_overrides"
    __table_args__ = (Index("ix_flag_overrides_flag_subject", "flag_id", "subject_id", unique=True),)

    id = Column(String(36), primary_key=True)
    flag_id = Column(String(36), ForeignKey("feature_flags.id"), nullable=False, index=True)
    subject_id = Column(String(255), nullable=False)
    enabled = Column(Boolean, nullable=False)
    reason = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ExperimentRow(Base):
    """Experiment row."""

    __tablename__ = "experiments"
    __table_args__ = (Index("ix_experiments_status", "status"),)

    id = Column(String(36), primary_key=True)
    key = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    hypothesis = Column(Text, nullable=False, default="")
    status = Column(String(20), nullable=False, default="draft")
    traffic_percentage = Column(Integer, nullable=False, default=100)
    segment_rules = Column(JSON, nullable=True)
    primary_metric = Column(String(255), nullable=False, default="")
    secondary_metrics = Column(JSON, nullable=True)
    min_sample_size = Column(Integer, nullable=False, default=100)
    confidence_level = Column(Float, nullable=False, default=0.95)
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ExperimentRow(key='{self.key}', status={self.status})>"


class VariantRow(Base):
    """Experiment variant row. Keys are unique within an experiment."""

    __tablename__ = "experiment_variants"
    __table_args__ = (Index("ix_experiment_variants_experiment_key", "experiment_id", "key", unique=True),)

    id = Column(String(36), primary_key=True)
    experiment_id = Column(String(36), ForeignKey("experiments.id"), nullable=False, index=True)
    key = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    is_control = Column(Boolean, nullable=False, default=False)
    weight = Column(Integer, nullable=False)
    config = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AssignmentRow(Base):
    """Experiment assignment row. At most one per (experiment, subject)."""

    __tablename__ = "experiment_assignments"
    __table_args__ = (
        Index("ix_experiment_assignments_experiment_subject", "experiment_id", "subject_id", unique=True),
    )

    id = Column(String(36), primary_key=True)
    experiment_id = Column(String(36), ForeignKey("experiments.id"), nullable=False)
    subject_id = Column(String(255), nullable=False)
    variant_id = Column(String(36), ForeignKey("experiment_variants.id"), nullable=False, index=True)
    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class EventRow(Base):
    """Append-only experiment event row."""

    __tablename__ = "experiment_events"
    __table_args__ = (Index("ix_experiment_events_experiment_variant", "experiment_id", "variant_id"),)

    id = Column(String(36), primary_key=True)
    experiment_id = Column(String(36), ForeignKey("experiments.id"), nullable=False)
    subject_id = Column(String(255), nullable=False)
    variant_id = Column(String(36), ForeignKey("experiment_variants.id"), nullable=False)
    event_type = Column(String(100), nullable=False)
    event_value = Column(Float, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
