"""
Project-wide settings, read from ``STACKSHIP_*`` environment variables and an
optional ``.env`` file in the project directory.

Nested values use ``__``, e.g. ``STACKSHIP_DB_VARS__URL=SPRING_DATASOURCE_URL``.
"""
import os
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseVariables(BaseModel):
    """Names of the variables the packaged application reads its database settings from."""
    url: str = "DATABASE_URL"
    host: str = "DATABASE_HOST"
    user: str = "DATABASE_USER"
    password: str = "DATABASE_PASSWORD"
    name: str = "DATABASE_NAME"


class Settings(BaseSettings):
    """
    Settings for the build pipeline and the runtime managers.
    CLI options take precedence over anything loaded here.
    """
    model_config = SettingsConfigDict(
        env_prefix="STACKSHIP_",
        env_nested_delimiter="__",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    state_dir: str = ".stackship"
    cache_dir: Optional[str] = None

    default_subnet: str = "172.28.0.0/16"
    stage_timeout: float = 1800.0

    readiness_attempts: int = 10
    readiness_backoff: float = 0.5
    readiness_max_wait: float = 10.0

    run_as_user: str = "app"
    run_as_uid: int = 10001

    db_vars: DatabaseVariables = Field(default_factory=DatabaseVariables)

    log_level: str = "INFO"

    @property
    def resolved_cache_dir(self) -> str:
        return self.cache_dir or os.path.join(self.state_dir, "cache")

    @classmethod
    def load(cls, base_dir: str = ".") -> "Settings":
        """
        Builds settings from the process environment and ``<base_dir>/.env``.
        Process variables win over the file. A relative state dir is taken
        relative to ``base_dir``.

        :param base_dir: Directory holding the optional ``.env`` file.
        """
        settings = cls(_env_file=os.path.join(base_dir, ".env"))
        if not os.path.isabs(settings.state_dir):
            settings.state_dir = os.path.join(base_dir, settings.state_dir)
        return settings
