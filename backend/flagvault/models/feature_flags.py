from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from flagvault.core.db import Base
from flagvault.models.mixins import TimestampMixin


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")


def _new_flag_id() -> str:
    return str(uuid4())


class FeatureFlag(TimestampMixin, Base):
    __tablename__ = "feature_flags"
    __table_args__ = (
        UniqueConstraint("key", name="uq_feature_flags_key"),
        CheckConstraint("status IN ('active', 'archived')", name="ck_feature_flags_status"),
        CheckConstraint("NOT (force_on AND force_off)", name="ck_feature_flags_force_exclusive"),
    )

    id = Column(String(36), primary_key=True, default=_new_flag_id)
    key = Column(String, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="active")
    force_on = Column(Boolean, nullable=False, default=False)
    force_off = Column(Boolean, nullable=False, default=False)
    allow_user_ids = Column(JSON_TYPE, nullable=False, default=list)
    block_user_ids = Column(JSON_TYPE, nullable=False, default=list)
    allow_domains = Column(JSON_TYPE, nullable=False, default=list)
    created_by = Column(String, nullable=True)
    version = Column(Integer, nullable=False)

    targeting_configs = relationship(
        "FlagTargetingConfig",
        back_populates="flag",
        cascade="all, delete-orphan",
        order_by="FlagTargetingConfig.environment",
    )

    __mapper_args__ = {"version_id_col": version}


class FlagTargetingConfig(TimestampMixin, Base):
    __tablename__ = "flag_targeting_configs"
    __table_args__ = (
        UniqueConstraint("flag_id", "environment", name="uq_flag_targeting_env"),
        CheckConstraint("rollout >= 0 AND rollout <= 100", name="ck_flag_targeting_rollout"),
    )

    id = Column(Integer, primary_key=True, index=True)
    flag_id = Column(
        String(36),
        ForeignKey("feature_flags.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    environment = Column(String, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    tenants = Column(JSON_TYPE, nullable=False, default=list)
    rules = Column(JSON_TYPE, nullable=False, default=list)
    rollout = Column(Integer, nullable=False, default=0)
    rollout_key = Column(String, nullable=False, default="user.id")
    schedule_start = Column(DateTime, nullable=True)
    schedule_end = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    flag = relationship("FeatureFlag", back_populates="targeting_configs")

    __mapper_args__ = {"version_id_col": version}
