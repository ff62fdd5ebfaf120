"""
Runtime configuration for the Forge API.

Environment-driven (a `.env` beside this module is loaded first) and
read-only once the app is built.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from forge_kernel.domain_types import validate_principal

_ENV_PATH = os.path.join(os.path.dirname(__file__), ".env")


class ForgeSettings(BaseModel):
    """Settings for one API process."""

    database_path: str = Field(
        "forge.db",
        description="sqlite file holding the command log and snapshots",
    )
    database_url: str = Field(
        "",
        description="postgres:// URL; when set, the PostgreSQL log is used instead of sqlite",
    )
    deployer: Optional[str] = Field(
        None,
        description="Principal that initializes an instance on its first write",
    )
    snapshot_interval: int = Field(10, ge=0)
    require_admin_for_generation: bool = False
    frontend_url: str = "http://localhost:3000"
    log_level: str = "INFO"

    @field_validator("deployer")
    @classmethod
    def check_deployer(cls, value: Optional[str]) -> Optional[str]:
        if value:
            validate_principal(value)
            return value
        return None

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level {value!r}")
        return level


def load_settings() -> ForgeSettings:
    """Build settings from the process environment."""
    if os.path.exists(_ENV_PATH):
        load_dotenv(_ENV_PATH)

    raw = {
        "database_path": os.environ.get("FORGE_DATABASE_PATH"),
        "database_url": os.environ.get("DATABASE_URL"),
        "deployer": os.environ.get("FORGE_DEPLOYER"),
        "snapshot_interval": os.environ.get("FORGE_SNAPSHOT_INTERVAL"),
        "require_admin_for_generation": os.environ.get("FORGE_REQUIRE_ADMIN_FOR_GENERATION"),
        "frontend_url": os.environ.get("FRONTEND_URL"),
        "log_level": os.environ.get("FORGE_LOG_LEVEL"),
    }
    return ForgeSettings(**{k: v for k, v in raw.items() if v is not None})


def configure_logging(settings: ForgeSettings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
