"""Configuration management for the Pastr daemon."""

from pathlib import Path
from typing import List, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator


DRIVE_APPDATA_SCOPE = "https://www.googleapis.com/auth/drive.appdata"
DRIVE_FILE_SCOPE = "https://www.googleapis.com/auth/drive.file"


class ApiConfig(BaseModel):
    host: str = "localhost"
    port: int = 8766


class RemoteConfig(BaseModel):
    """Where the snapshot lives."""
    file_name: str = "pastr_data.json"
    api_base: str = "https://www.googleapis.com"
    timeout_seconds: float = 30.0


class OAuthConfig(BaseModel):
    client_id: str = ""
    client_secret: str = ""
    scopes: List[str] = Field(
        default_factory=lambda: [DRIVE_APPDATA_SCOPE, DRIVE_FILE_SCOPE]
    )
    device_code_url: str = "https://oauth2.googleapis.com/device/code"
    token_url: str = "https://oauth2.googleapis.com/token"
    revoke_url: str = "https://oauth2.googleapis.com/revoke"
    # Host-level grant cache; removed on revocation
    grant_file: str = "oauth_grant.json"


class SyncConfig(BaseModel):
    # Used only until the settings store holds a value
    default_interval_minutes: int = 0
    seconds_per_minute: float = 60.0

    @field_validator('default_interval_minutes')
    @classmethod
    def validate_interval(cls, v: int) -> int:
        if v < 0:
            raise ValueError("default_interval_minutes must be >= 0")
        return v


class CaptureConfig(BaseModel):
    poll_seconds: float = 15.0
    pending_ttl_hours: float = 24.0
    default_enabled: bool = False

    @field_validator('poll_seconds')
    @classmethod
    def validate_poll(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("poll_seconds must be positive")
        return v


class Config(BaseModel):
    """Main configuration for the Pastr daemon."""

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".local" / "share" / "pastr")
    api: ApiConfig = Field(default_factory=ApiConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)

    @field_validator('data_dir')
    @classmethod
    def validate_data_dir(cls, v: Path) -> Path:
        if isinstance(v, str):
            v = Path(v)
        v = v.expanduser().resolve()
        if not v.exists():
            logger.warning(f"Data directory does not exist, will create: {v}")
            v.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def snippets_path(self) -> Path:
        return self.data_dir / "snippets.json"

    @property
    def settings_path(self) -> Path:
        return self.data_dir / "settings.json"

    @property
    def grant_path(self) -> Path:
        return self.data_dir / self.oauth.grant_file

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file, or defaults when none exists."""
        if config_path is None:
            candidates = [
                Path("pastr.yaml"),
                Path.home() / ".config" / "pastr" / "config.yaml",
                Path("/etc/pastr/config.yaml"),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                logger.info("No config file found, using defaults")
                return cls()

        logger.info(f"Loading config from: {config_path}")
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False)
