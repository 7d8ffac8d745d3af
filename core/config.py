"""Relay settings, read from the environment (and a .env file if present)."""

from __future__ import annotations

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from core.work import WorkKind, default_kinds

# env var -> settings field
_ENV_FIELDS = {
    "RELAY_HOST": "host",
    "PORT": "port",
    "RELAY_PUBLIC_URL": "public_url",
    "RELAY_EMAIL_TIMEOUT": "email_timeout",
    "RELAY_ATTENDEES_TIMEOUT": "attendees_timeout",
    "RELAY_HEARTBEAT": "heartbeat_interval",
    "RELAY_QUEUE_SIZE": "queue_size",
    "RELAY_LOG_LEVEL": "log_level",
    "RELAY_SHUTDOWN_GRACE": "shutdown_grace",
}


class RelaySettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 3000
    public_url: str | None = None       # overrides the base of callback URLs
    email_timeout: float = Field(300.0, gt=0)
    attendees_timeout: float = Field(30.0, gt=0)
    heartbeat_interval: float = Field(30.0, gt=0)
    queue_size: int = Field(100, ge=2)       # greeting takes two slots
    shutdown_grace: float = Field(5.0, gt=0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> RelaySettings:
        """Build settings from *env* (defaults to ``os.environ`` after
        loading ``.env``). Unset variables keep their defaults."""
        if env is None:
            load_dotenv()
            env = dict(os.environ)
        values = {
            field: env[var]
            for var, field in _ENV_FIELDS.items()
            if env.get(var, "").strip()
        }
        return cls.model_validate(values)

    def work_kinds(self) -> dict[str, WorkKind]:
        return default_kinds(
            email_timeout=self.email_timeout,
            attendees_timeout=self.attendees_timeout,
        )
