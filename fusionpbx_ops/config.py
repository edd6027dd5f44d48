"""
Environment-driven configuration.

Every knob the deploy, backup and repair tooling reads comes from the process
environment, optionally seeded from an env file next to the compose project
(`.env.production`, `.env.prod`, `.env`). Values already exported in the shell
win over the file.
"""

from pathlib import Path
from typing import Iterable, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_IMAGE = "skytruongdev/fusionpbx:latest"
LOCAL_IMAGE_TAG = "fusionpbx-custom:latest"


class DatabaseSettings(BaseSettings):
    """FusionPBX application database (the one inside the container)."""

    host: str = Field(default="localhost", description="PostgreSQL host")
    port: int = Field(default=5432, description="PostgreSQL port")
    name: str = Field(default="fusionpbx", description="Database name")
    user: str = Field(default="fusionpbx", description="Database role")
    password: str = Field(default="fusionpbx", description="Database password")

    model_config = SettingsConfigDict(env_prefix="DB_", extra="ignore")

    def connect_kwargs(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.name,
            "user": self.user,
            "password": self.password,
        }


class FusionPBXSettings(BaseSettings):
    """Domain and admin account the installer and repair tooling converge on."""

    domain: str = Field(default="localhost", description="Domain the admin user lives in")
    admin_user: str = Field(default="admin", description="Admin username")
    admin_password: str = Field(default="admin", description="Admin password (only used on create)")
    setup_wizard: bool = Field(default=False, description="Prefer the web setup wizard")
    image: str = Field(default=DEFAULT_IMAGE, description="Image pulled when not building")

    model_config = SettingsConfigDict(env_prefix="FUSIONPBX_", extra="ignore")


class Settings(BaseSettings):
    """Top-level settings.

    Deploy switches are tri-state: None means "use the deploy profile's default".
    """

    db: DatabaseSettings = Field(default_factory=DatabaseSettings)
    fusionpbx: FusionPBXSettings = Field(default_factory=FusionPBXSettings)

    auto_install: Optional[bool] = None
    build_image: Optional[bool] = None
    clean_deploy: Optional[bool] = None
    skip_pull: Optional[bool] = None
    configure_firewall: Optional[bool] = None

    enable_https: bool = True
    enable_fail2ban: bool = True
    backup_retention_days: int = Field(default=30, ge=0)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, reading the environment on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Forget cached settings (after an env file was loaded, and in tests)."""
    global _settings
    _settings = None


def load_env_file(project_dir: Path, candidates: Iterable[str]) -> Optional[Path]:
    """Load the first existing env file from `candidates`.

    Variables already present in the environment are not overridden.
    Returns the loaded path, or None when no candidate exists.
    """
    project_dir = Path(project_dir)
    for candidate in candidates:
        path = project_dir / candidate
        if path.is_file():
            load_dotenv(path, override=False)
            reset_settings()
            logger.info("Loaded environment file", path=str(path))
            return path
    logger.warning(
        "No environment file found, using defaults",
        searched=[str(project_dir / c) for c in candidates],
    )
    return None
