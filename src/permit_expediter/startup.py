"""Centralized initialization for all permit_expediter entry points.

Provides a single point of initialization for:
- Environment variables (.env loading)
- Settings resolution (workspace YAML + PERMIT_* overrides)

The API and CLI both call ensure_initialized() so they start up the same way.
"""

import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from permit_expediter.config.settings import PermitBuilderSettings, load_settings

logger = logging.getLogger(__name__)

# Module-level state
_initialized: bool = False
_settings: Optional[PermitBuilderSettings] = None


def _find_project_root(start_path: Optional[Path] = None) -> Path:
    """Find the project root by walking up to the nearest pyproject.toml or .env."""
    current = (start_path or Path.cwd()).resolve()
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists() or (parent / ".env").exists():
            return parent
    return current


def _load_env(project_root: Path) -> bool:
    """Load .env from the project root. Existing variables are not overridden."""
    env_path = project_root / ".env"
    if env_path.exists():
        load_dotenv(env_path)
        logger.debug(f"Loaded .env from {env_path}")
        return True
    logger.debug(f"No .env found at {env_path}")
    return False


def ensure_initialized(workspace_dir: Optional[Path] = None) -> PermitBuilderSettings:
    """Ensure the application is initialized (idempotent).

    Loads .env and resolves settings on first call; later calls return the
    cached settings unless a different ``workspace_dir`` is requested.

    Args:
        workspace_dir: Optional workspace override (e.g. from ``--workspace``).
    """
    global _initialized, _settings

    if _initialized and _settings is not None:
        if workspace_dir is None or Path(workspace_dir) == _settings.workspace_dir:
            return _settings

    _load_env(_find_project_root())
    _settings = load_settings(workspace_dir=workspace_dir)
    _initialized = True
    logger.info(
        f"Permit builder initialized (environment={_settings.environment}, "
        f"workspace={_settings.workspace_dir})"
    )
    return _settings


def get_settings() -> PermitBuilderSettings:
    """Get the current settings.

    Raises:
        RuntimeError: If not initialized. Call ensure_initialized() first.
    """
    if not _initialized or _settings is None:
        raise RuntimeError("startup not initialized. Call ensure_initialized() first.")
    return _settings


def reset() -> None:
    """Forget cached settings (used by tests)."""
    global _initialized, _settings
    _initialized = False
    _settings = None
