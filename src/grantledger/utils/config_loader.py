import yaml
import os
from pathlib import Path
from pydantic import BaseModel, Field, model_validator
from typing import Dict, Optional, Literal

from ..ledger.grants import DEFAULT_GRANT_PRIORITIES, GrantType
from .logging_config import StructuredLogger

logger = StructuredLogger(__name__)

# --- V1 Schema Models ---

class DatabaseConfig(BaseModel):
    # 0 disables the per-transaction statement_timeout
    statement_timeout_ms: int = Field(0, ge=0)

class MeteringConfig(BaseModel):
    enabled: bool = False
    endpoint: Optional[str] = None
    api_key_env: str = "GRANTLEDGER_METERING_API_KEY"
    timeout_seconds: float = Field(3.0, gt=0)

    @model_validator(mode="after")
    def validate_endpoint(self):
        if self.enabled and not self.endpoint:
            raise ValueError("metering.endpoint is required when metering is enabled")
        return self

class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

class LedgerConfig(BaseModel):
    version: int = Field(1, ge=1, le=1)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    metering: MeteringConfig = Field(default_factory=MeteringConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    priorities: Dict[GrantType, int] = Field(default_factory=lambda: dict(DEFAULT_GRANT_PRIORITIES))

    @model_validator(mode="after")
    def fill_missing_priorities(self):
        for grant_type, priority in DEFAULT_GRANT_PRIORITIES.items():
            self.priorities.setdefault(grant_type, priority)
        return self

# --- Config Loader (Atomic Reload) ---

class ConfigLoader:
    def __init__(self):
        default_dir = Path.home() / ".grantledger"
        self.config_dir = Path(os.getenv("GRANTLEDGER_CONFIG_DIR", str(default_dir)))
        self.config_file = self.config_dir / "ledger.yaml"
        self.config: Optional[LedgerConfig] = None

    def load_config(self) -> LedgerConfig:
        """
        Loads and validates configuration from ledger.yaml.
        ATOMIC: On failure, previous config is preserved.
        Raises ValueError if invalid and no previous config exists.
        """
        if not self.config_file.exists():
            logger.critical("Config file not found", path=str(self.config_file))
            raise FileNotFoundError(f"Config file not found at {self.config_file}")

        try:
            with open(self.config_file, "r") as f:
                raw_data = yaml.safe_load(f) or {}

            logger.info("Loading configuration", path=str(self.config_file))

            # Validate into a temporary; self.config is untouched until success
            new_config = LedgerConfig(**raw_data)

            self.config = new_config

            logger.info("Configuration loaded successfully",
                        version=self.config.version,
                        metering_enabled=self.config.metering.enabled)
            return self.config

        except Exception as e:
            logger.error("Configuration validation failed", error=str(e))
            if self.config is not None:
                logger.warning("Keeping previous valid configuration")
                raise ValueError(f"Invalid configuration (previous config retained): {e}") from e
            else:
                logger.critical("No previous configuration to fall back to")
                raise ValueError(f"Invalid configuration (no fallback): {e}") from e

    def get_config(self) -> LedgerConfig:
        """Return the active config, falling back to defaults when no file exists."""
        if self.config is not None:
            return self.config
        if not self.config_file.exists():
            logger.info("No config file; using defaults", path=str(self.config_file))
            self.config = LedgerConfig()
            return self.config
        return self.load_config()

    def priority_for(self, grant_type: GrantType) -> int:
        return self.get_config().priorities[GrantType(grant_type)]

config_loader = ConfigLoader()
