"""Engine settings.

Defaults live on the model; ``EngineSettings.from_env()`` overlays
``CONVERGE_*`` environment variables and the CLI overlays its flags on top.
"""

import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


ENV_PREFIX = "CONVERGE_"


class EngineSettings(BaseModel):
    """Tunables for planning and apply."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    parallelism: int = Field(10, ge=1, description="Maximum provider calls in flight at once")
    max_retries: int = Field(2, ge=0, description="Retries for a retryable provider error")
    retry_backoff_seconds: float = Field(0.5, ge=0, description="First retry delay; doubles each retry")
    lock_timeout_seconds: float = Field(0.0, ge=0, description="How long to wait for the state lock")
    auto_approve: bool = False  # Automation mode: apply without asking
    refresh: bool = True  # Read remote objects before planning to detect drift
    log_level: str = "WARNING"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level '{v}'")
        return level

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "EngineSettings":
        """Build settings from ``CONVERGE_*`` variables plus explicit overrides.

        Overrides whose value is None are ignored, so CLI flags that were not
        given fall through to the environment.

        Raises:
            pydantic.ValidationError: If a value cannot be parsed
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
