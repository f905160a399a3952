"""Permit builder settings.

Defaults are overridden first by ``{workspace}/config/permit_builder.yaml``
and then by ``PERMIT_*`` environment variables.

Example permit_builder.yaml::

    environment: production
    default_state: FL
    parcel_cache_ttl_days: 14
    documents_bucket: permits
    signing_secret: "..."
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "PERMIT_"
DEFAULT_WORKSPACE = Path("workspace")
CONFIG_FILENAME = "permit_builder.yaml"
DEV_SIGNING_SECRET = "dev-only-signing-secret"


class PermitBuilderSettings(BaseModel):
    """Runtime configuration for permit builds.

    Attributes:
        environment: Deployment environment; "production" hides error details.
        workspace_dir: Root for tables, stored objects and config.
        default_state: State used when a case has none.
        default_permit_type: Permit type used when the estimate has none.
        parcel_cache_ttl_days: Age after which cached parcel rows are stale.
        documents_bucket: Object storage bucket for generated documents.
        signed_url_ttl_seconds: Lifetime of signed document URLs.
        signing_secret: HMAC key for signed URLs.
        store_timeout_seconds: Timeout applied to every data store call.
    """

    environment: str = "development"
    workspace_dir: Path = DEFAULT_WORKSPACE
    default_state: str = Field(default="FL", min_length=2, max_length=2)
    default_permit_type: str = "ROOF_REPLACEMENT"
    parcel_cache_ttl_days: int = Field(default=7, ge=0)
    documents_bucket: str = Field(default="permits", min_length=1)
    signed_url_ttl_seconds: int = Field(default=3600, gt=0)
    signing_secret: str = Field(default=DEV_SIGNING_SECRET, min_length=1)
    store_timeout_seconds: float = Field(default=10.0, gt=0)

    model_config = {"extra": "forbid"}

    @field_validator("workspace_dir", mode="before")
    @classmethod
    def convert_workspace_dir(cls, v):
        """Convert string paths to Path objects."""
        if isinstance(v, str):
            return Path(v)
        return v

    @field_validator("environment")
    @classmethod
    def normalize_environment(cls, v: str) -> str:
        return v.strip().lower()

    @model_validator(mode="after")
    def require_secret_in_production(self) -> "PermitBuilderSettings":
        if self.is_production and self.signing_secret == DEV_SIGNING_SECRET:
            raise ValueError("signing_secret must be set in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def config_dir(self) -> Path:
        return self.workspace_dir / "config"

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> "PermitBuilderSettings":
        """Create settings from environment variables only.

        Environment variables:
            {prefix}ENVIRONMENT, {prefix}WORKSPACE_DIR, {prefix}DEFAULT_STATE,
            {prefix}DEFAULT_PERMIT_TYPE, {prefix}PARCEL_CACHE_TTL_DAYS,
            {prefix}DOCUMENTS_BUCKET, {prefix}SIGNED_URL_TTL_SECONDS,
            {prefix}SIGNING_SECRET, {prefix}STORE_TIMEOUT_SECONDS

        Args:
            prefix: Environment variable prefix (default: PERMIT_)
        """
        return cls(**env_overrides(prefix))


def env_overrides(prefix: str = ENV_PREFIX) -> Dict[str, Any]:
    """Collect settings fields that are set in the environment."""
    kwargs: Dict[str, Any] = {}
    for name in PermitBuilderSettings.model_fields:
        value = os.getenv(f"{prefix}{name.upper()}")
        if value:
            kwargs[name] = value
    return kwargs


def load_settings(
    workspace_dir: Optional[Path] = None,
    config_path: Optional[Path] = None,
    prefix: str = ENV_PREFIX,
) -> PermitBuilderSettings:
    """Load settings from the workspace YAML file plus environment overrides.

    Args:
        workspace_dir: Workspace root. Defaults to ``{prefix}WORKSPACE_DIR`` or ./workspace.
        config_path: Explicit YAML path; defaults to {workspace}/config/permit_builder.yaml.
        prefix: Environment variable prefix.

    Raises:
        ValueError: If the YAML file or the merged settings are invalid.
    """
    env = env_overrides(prefix)
    if workspace_dir is None:
        workspace_dir = Path(env.get("workspace_dir") or DEFAULT_WORKSPACE)
    else:
        env.pop("workspace_dir", None)
    if config_path is None:
        config_path = Path(workspace_dir) / "config" / CONFIG_FILENAME

    data: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            logger.warning(f"Empty permit builder config at {config_path}")
        elif not isinstance(loaded, dict):
            raise ValueError(f"Permit builder config at {config_path} must be a mapping")
        else:
            data.update(loaded)
            logger.debug(f"Loaded permit builder config from {config_path}")
    else:
        logger.debug(f"No permit builder config found at {config_path}")

    data.update(env)
    data["workspace_dir"] = Path(workspace_dir)

    try:
        return PermitBuilderSettings.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid permit builder settings ({config_path}): {e}") from e
