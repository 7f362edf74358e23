"""Configuration for the case transition engine.

Persistent settings live in .caseflow/config.json; a missing file means
defaults.
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigError
from .schemas import UserRole

CASEFLOW_DIR = Path(".caseflow")
CONFIG_PATH = CASEFLOW_DIR / "config.json"


class CaseflowConfig(BaseModel):
    """Top-level configuration."""

    data_path: Path = CASEFLOW_DIR / "store.json"
    approver_roles: list[UserRole] = Field(default_factory=lambda: [UserRole.ADMIN])
    side_effect_attempts: int = Field(default=3, ge=1)
    side_effect_wait_seconds: float = Field(default=0.5, ge=0)
    log_level: str = "WARNING"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def load_config(path: Path | None = None) -> CaseflowConfig | None:
    """Load configuration from .caseflow/config.json.

    Returns:
        CaseflowConfig if the file exists, None otherwise.

    Raises:
        ConfigError: If the file cannot be parsed.
    """
    path = path or CONFIG_PATH
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return CaseflowConfig.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc


def save_config(config: CaseflowConfig, path: Path | None = None) -> None:
    """Persist configuration to .caseflow/config.json."""
    path = path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(
        config.model_dump(mode="json"), indent=2, ensure_ascii=False
    ) + "\n"
    path.write_text(payload, encoding="utf-8")


def ensure_config(path: Path | None = None) -> CaseflowConfig:
    """Load existing config or write and return the defaults."""
    config = load_config(path)
    if config is None:
        config = CaseflowConfig()
        save_config(config, path)
    return config
