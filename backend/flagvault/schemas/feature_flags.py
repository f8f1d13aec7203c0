from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, Field

from flagvault.core.config import settings


class FlagTargetingSummary(BaseModel):
    percentage: int = 0
    allowDomains: List[str] = Field(default_factory=list)
    allowUserIds: List[str] = Field(default_factory=list)
    blockUserIds: List[str] = Field(default_factory=list)


class FlagTargetingInput(BaseModel):
    percentage: Optional[int] = None
    allowDomains: Optional[List[str]] = None
    allowUserIds: Optional[List[str]] = None
    blockUserIds: Optional[List[str]] = None


class FlagRead(BaseModel):
    id: str
    key: str
    name: str
    description: Optional[str] = None
    status: str
    force_on: bool
    force_off: bool
    targeting: FlagTargetingSummary
    version: int
    created_at: datetime
    updated_at: datetime


# key and name are optional here so a missing value surfaces as an
# invalid_argument error from the flag layer rather than a schema error.
class FlagCreate(BaseModel):
    key: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    status: str = "active"
    force_on: Optional[bool] = False
    force_off: Optional[bool] = False
    targeting: Optional[FlagTargetingInput] = None


class FlagUpdate(BaseModel):
    key: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    force_on: Optional[bool] = None
    force_off: Optional[bool] = None
    targeting: Optional[FlagTargetingInput] = None
    version: Optional[int] = None


class RulePayload(BaseModel):
    type: str = "attribute"
    attr: Optional[str] = None
    op: Optional[str] = None
    val: Optional[Union[str, int, float, bool]] = None
    segmentId: Optional[str] = None


class SchedulePayload(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class TargetingConfigPayload(BaseModel):
    active: bool = True
    tenants: List[str] = Field(default_factory=lambda: list(settings.TENANT_LABELS))
    rules: List[RulePayload] = Field(default_factory=list)
    rollout: int = 0
    rolloutKey: str = "user.id"
    schedule: SchedulePayload = Field(default_factory=SchedulePayload)
    updatedAt: Optional[datetime] = None
    version: Optional[int] = None


class EnvironmentTargetingRead(BaseModel):
    flagKey: str
    environment: str
    config: TargetingConfigPayload


class EnvironmentTargetingWrite(BaseModel):
    config: TargetingConfigPayload
    version: Optional[int] = None


class PreviewRequest(BaseModel):
    identifier: str
    environment: str = Field(default_factory=lambda: settings.DEFAULT_ENVIRONMENT)


class EvaluationResultRead(BaseModel):
    flag_key: str
    environment: Optional[str] = None
    enabled: bool
    reason: str
    bucket: Optional[int] = None


class SegmentRead(BaseModel):
    id: str
    name: str
