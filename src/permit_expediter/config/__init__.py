"""Configuration for permit builds."""

from permit_expediter.config.settings import (
    PermitBuilderSettings,
    env_overrides,
    load_settings,
)

__all__ = ["PermitBuilderSettings", "env_overrides", "load_settings"]
