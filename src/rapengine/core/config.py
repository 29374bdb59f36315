"""Engine settings.

Resolution order for every setting:
1. Explicit value (constructor argument or CLI option)
2. RAPENGINE_* environment variable
3. Default
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

DEFAULT_DATABASE_URL = "sqlite:///./rapengine.db"

ENV_VARS = {
    "database_url": "RAPENGINE_URL",
    "schema_dir": "RAPENGINE_SCHEMA_DIR",
    "default_locale": "RAPENGINE_LOCALE",
    "log_level": "RAPENGINE_LOG_LEVEL",
}


class EngineSettings(BaseModel):
    """Settings shared by RapEngine and the CLI."""

    database_url: str = Field(default=DEFAULT_DATABASE_URL, description="Record store URL")
    schema_dir: Path | None = Field(default=None, description="Directory of entity markdown files")
    default_locale: str = Field(default="en", description="Locale of violation messages")
    locales: list[str] = Field(default_factory=lambda: ["en", "de"])
    log_level: str = Field(default="WARNING", description="Logging level name")
    echo: bool = Field(default=False, description="Echo SQL statements")

    model_config = {"frozen": True}

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def from_env(cls, **overrides: Any) -> EngineSettings:
        """Build settings from RAPENGINE_* variables; non-None overrides win.

        Example:
            settings = EngineSettings.from_env(database_url="sqlite:///:memory:")
        """
        values: dict[str, Any] = {}
        for name, env_var in ENV_VARS.items():
            if env_value := os.getenv(env_var):
                values[name] = env_value
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
