"""Configuration system for Universal Escrow.

Loads profile config from `.universal-escrow/<profile>/config.yaml`, supports
environment variable expansion, and carries user-defined escrow templates
alongside the built-in catalog.
"""

from __future__ import annotations

import os
import re
from decimal import Decimal
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_serializer


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    If the variable is not set the placeholder is left as-is so that
    validation can catch it later.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    """Walk an arbitrary nested structure and expand env vars in strings."""
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------


class StorageConfig(BaseModel):
    """SQLite store settings."""

    db_filename: str = "escrow.db"
    max_retries: int = 5          # optimistic-lock retries per mutation
    busy_timeout_ms: int = 5000   # wait on another process's write lock


class ReleaseConfig(BaseModel):
    """Payout arithmetic."""

    tolerance: Decimal = Decimal("0.01")  # allowed |sum(milestones) - amount|
    quantum: Decimal = Decimal("0.01")    # payouts are rounded to this step

    @field_serializer("tolerance", "quantum")
    def _as_str(self, value: Decimal) -> str:
        return str(value)


class DefaultsConfig(BaseModel):
    """Defaults applied when a caller does not specify a value."""

    chain: str = "base"
    currency: str = "USDC"
    funding_deadline_days: int = 3


class DashboardConfig(BaseModel):
    """JSON API server settings."""

    port: int = 8420
    host: str = "127.0.0.1"


class LoggingConfig(BaseModel):
    level: str = "INFO"


class TemplateConditionConfig(BaseModel):
    """One default condition of a user-defined template."""

    description: str
    type: str = "custom"
    release_amount: Optional[str] = None
    release_percentage: Optional[str] = None
    deadline_days: Optional[int] = None


class TemplateConfig(BaseModel):
    """A user-defined escrow template declared in ``config.yaml``."""

    name: str
    vertical: str = "custom"
    kind: Optional[str] = None       # defaults from the vertical
    description: str = ""
    conditions: list[TemplateConditionConfig] = Field(default_factory=list)
    release_requires: str = "all_conditions"
    recommended_roles: list[str] = Field(default_factory=list)
    auto_release_days: Optional[int] = None


class EscrowConfig(BaseModel):
    """Root configuration object for one escrow profile."""

    name: str = "Escrow Desk"
    storage: StorageConfig = Field(default_factory=StorageConfig)
    release: ReleaseConfig = Field(default_factory=ReleaseConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    templates: list[TemplateConfig] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def slugify(name: str) -> str:
    """Convert a profile name to a filesystem-safe slug.

    ``"My Desk"`` → ``"my-desk"``, ``""`` → ``"default"``.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "default"


def get_root_dir(base: Path | None = None) -> Path:
    """Return the ``.universal-escrow/`` root directory (no auto-create).

    Parameters
    ----------
    base:
        Parent directory that contains (or will contain) the root folder.
        Defaults to the current working directory.
    """
    if base is None:
        base = Path.cwd()
    return base / ".universal-escrow"


def get_profile_dir(
    profile: str = "default",
    base: Path | None = None,
    *,
    create: bool = True,
) -> Path:
    """Return the directory for a profile, e.g. ``.universal-escrow/<slug>/``.

    Parameters
    ----------
    profile:
        Profile slug (e.g. ``"default"``, ``"closing-desk"``).
    base:
        Parent directory that contains (or will contain) the
        ``.universal-escrow/`` folder.  Defaults to the current working
        directory.
    create:
        If *True* (default), create the directory tree if it doesn't exist.
        Pass *False* for read-only lookups.
    """
    root = get_root_dir(base)
    profile_dir = root / slugify(profile)
    if create:
        profile_dir.mkdir(parents=True, exist_ok=True)
    return profile_dir


def list_profiles(base: Path | None = None) -> list[str]:
    """Return slugs of all profiles (subdirs containing ``config.yaml``)."""
    root = get_root_dir(base)
    if not root.is_dir():
        return []
    return sorted(
        d.name
        for d in root.iterdir()
        if d.is_dir() and (d / "config.yaml").exists()
    )


def load_config(path: Path) -> EscrowConfig:
    """Load and validate a profile configuration from a YAML file.

    Environment variable placeholders (``${VAR}``) are expanded before
    validation.
    """
    raw_text = path.read_text(encoding="utf-8")
    raw_data = yaml.safe_load(raw_text) or {}
    expanded = _expand_env_recursive(raw_data)
    return EscrowConfig.model_validate(expanded)


def load_or_default(profile_dir: Path) -> EscrowConfig:
    """Load ``profile_dir/config.yaml`` if present, else the default config."""
    path = profile_dir / "config.yaml"
    if path.exists():
        return load_config(path)
    return EscrowConfig()


def save_config(config: EscrowConfig, path: Path) -> None:
    """Serialize an :class:`EscrowConfig` to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
