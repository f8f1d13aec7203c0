# Central place for all configurable settings. We use Pydantic's
# BaseSettings so values can be read from env vars or a .env file.
# Flag environments, tenant labels and identity headers all live here.

import json
from typing import Annotated, List

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def safe_json_loads(value):
    try:
        return json.loads(value)
    except Exception:
        return value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Core DB connection string, like sqlite:///./flags.db or Postgres URL.
    # The flag registry reads its snapshots from here.
    DATABASE_URL: str = "sqlite:///./flagvault.db"

    # Toggle SQLAlchemy echo logs. Useful for debugging queries locally.
    DB_ECHO: bool = False

    # Environments a flag can be targeted in. The set is fixed per deployment.
    FLAG_ENVIRONMENTS: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["prod", "staging", "dev"]
    )
    # Environment whose rollout is reported as the flag-level percentage.
    DEFAULT_ENVIRONMENT: str = "prod"

    # Tenant labels a targeting config can allow, and the label assumed
    # when the evaluation context carries none.
    TENANT_LABELS: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["Public", "Family", "Staff"]
    )
    DEFAULT_TENANT: str = "Public"

    # Email suffix that marks internal staff (preview identities and the
    # beta_testers segment).
    STAFF_EMAIL_DOMAIN: str = "@familycirclesecure.com"

    # How long a loaded flag snapshot is reused before the registry goes
    # back to the database. Writes through the service republish at once.
    FLAG_SNAPSHOT_TTL_SECONDS: int = Field(default=30, ge=0)

    # Identity headers set by the upstream auth gateway.
    USER_ID_HEADER: str = "X-User-ID"
    USER_EMAIL_HEADER: str = "X-User-Email"
    USER_TENANT_HEADER: str = "X-User-Tenant"
    USER_ROLE_HEADER: str = "X-User-Role"
    USER_TIER_HEADER: str = "X-User-Tier"
    SESSION_ID_HEADER: str = "X-Session-ID"
    PREVIEW_HEADER_NAME: str = "X-Preview-User"

    # Level for the structured JSON loggers.
    LOG_LEVEL: str = "INFO"

    # Roles allowed to use the admin flag endpoints and previews.
    ADMIN_ROLES: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["Admin", "Staff"])

    @field_validator("FLAG_ENVIRONMENTS", "TENANT_LABELS", "ADMIN_ROLES", mode="before")
    @classmethod
    def _parse_list_values(cls, value):
        if isinstance(value, str):
            decoded = safe_json_loads(value)
            if isinstance(decoded, list):
                return decoded
            parts = [p.strip() for p in value.split(",") if p.strip()]
            return parts
        return value

    @model_validator(mode="after")
    def _check_defaults_are_known(self):
        if self.DEFAULT_ENVIRONMENT not in self.FLAG_ENVIRONMENTS:
            raise ValueError("DEFAULT_ENVIRONMENT must be one of FLAG_ENVIRONMENTS")
        if self.DEFAULT_TENANT not in self.TENANT_LABELS:
            raise ValueError("DEFAULT_TENANT must be one of TENANT_LABELS")
        return self


# Instantiate a single settings object for app-wide import.
# Any module can just `from flagvault.core.config import settings`.
settings = Settings()
