"""Runtime settings, read once from the environment at startup.

Every setting is validated up front; anything missing or malformed raises
:class:`ConfigError` naming the environment variable so the process can exit
with a useful message instead of failing on the first document.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal, Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError
from .formats import TARGET_FORMATS, DocFormat, parse_format

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Field name -> environment variable.
_ENV_VARS: dict[str, str] = {
    "bot_token": "TELEGRAM_BOT_TOKEN",
    "state_dir": "STATE_DIR",
    "temp_dir": "TEMP_DIR",
    "log_level": "LOG_LEVEL",
    "conversion_timeout_sec": "CONVERSION_TIMEOUT_SEC",
    "default_format": "DEFAULT_FORMAT",
    "max_document_mb": "MAX_DOCUMENT_MB",
    "pandoc_path": "PANDOC_PATH",
    "pdf_engine": "PDF_ENGINE",
    "telegram_api_base": "TELEGRAM_API_BASE",
    "webhook_secret": "WEBHOOK_SECRET",
    "bot_mode": "BOT_MODE",
    "host": "HOST",
    "port": "PORT",
}

_REQUIRED = ("bot_token", "state_dir", "temp_dir")


class Settings(BaseModel):
    bot_token: str = Field(repr=False, min_length=1)
    state_dir: Path
    temp_dir: Path
    log_level: str = "INFO"
    conversion_timeout_sec: float = Field(default=60.0, gt=0)
    default_format: DocFormat = DocFormat.PDF
    max_document_mb: int = Field(default=20, gt=0)
    pandoc_path: str = "pandoc"
    pdf_engine: str | None = None
    telegram_api_base: str = "https://api.telegram.org"
    webhook_secret: str | None = Field(default=None, repr=False)
    bot_mode: Literal["webhook", "polling"] = "webhook"
    host: str = "0.0.0.0"
    port: int = Field(default=8080, gt=0, lt=65536)

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown log level {v!r}, expected one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("default_format", mode="before")
    @classmethod
    def _target_format(cls, v: object) -> object:
        if isinstance(v, DocFormat):
            fmt = v
        else:
            fmt = parse_format(str(v))
        if fmt is None or fmt not in TARGET_FORMATS:
            raise ValueError(f"{v!r} is not a supported output format")
        return fmt

    @field_validator("state_dir", "temp_dir")
    @classmethod
    def _writable_dir(cls, v: Path) -> Path:
        path = Path(v).expanduser().resolve()
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ValueError(f"cannot create directory {path}: {e}") from e
        if not os.access(path, os.W_OK | os.X_OK):
            raise ValueError(f"directory {path} is not writable")
        return path

    @field_validator("telegram_api_base")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def max_document_bytes(self) -> int:
        return self.max_document_mb * 1024 * 1024

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for field, var in _ENV_VARS.items():
            raw = env.get(var)
            if raw is None or not raw.strip():
                if field in _REQUIRED:
                    raise ConfigError(var, "must be set")
                continue
            values[field] = raw.strip()
        try:
            return cls(**values)
        except ValidationError as e:
            err = e.errors()[0]
            field = str(err["loc"][0]) if err.get("loc") else ""
            raise ConfigError(_ENV_VARS.get(field, field or "settings"), err["msg"]) from e


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    # Request URLs carry the bot token.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
