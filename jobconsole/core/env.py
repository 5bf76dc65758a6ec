import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

from jobconsole.core.errors import ConfigError


def is_production_env() -> bool:
    return (
        os.getenv("APP_ENV", "").lower() == "production"
        or os.getenv("ENV", "").lower() == "production"
    )


@dataclass(frozen=True)
class Settings:
    api_base_url: Optional[str] = None
    request_timeout_sec: float = 15.0
    proxy_timeout_sec: float = 60.0
    status_poll_interval_sec: float = 2.0
    status_poll_slow_interval_sec: float = 5.0
    status_poll_max_sec: float = 1800.0
    preview_poll_interval_sec: float = 2.0
    preview_poll_max_attempts: int = 30
    preview_frames_required: int = 8
    candidate_poll_interval_sec: float = 3.0
    candidate_poll_max_attempts: int = 60
    box_min_size: float = 0.01
    box_max_size: float = 0.95
    max_target_selections: int = 5
    frame_proxy_allowed_hosts: Tuple[str, ...] = field(default_factory=tuple)
    legacy_frame_origin: Optional[str] = None
    public_frame_origin: Optional[str] = None

    def base_url(self) -> str:
        value = (self.api_base_url or "").strip()
        if not value:
            raise ConfigError("CONFIG_MISSING", "Missing API_BASE_URL environment variable.")
        if not value.startswith(("http://", "https://")):
            raise ConfigError(
                "CONFIG_INVALID",
                "Invalid API_BASE_URL. It must start with http:// or https://.",
            )
        return value.rstrip("/")

    def api_url(self, path: str) -> str:
        return f"{self.base_url()}/{path.lstrip('/')}"


def _apply_env_alias(primary: str, aliases: list[str]) -> None:
    value = (os.getenv(primary) or "").strip()
    if not value:
        for alias in aliases:
            alias_value = (os.getenv(alias) or "").strip()
            if alias_value:
                value = alias_value
                os.environ[primary] = alias_value
                break
    if value:
        for alias in aliases:
            if not (os.getenv(alias) or "").strip():
                os.environ[alias] = value


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return max(1, int(os.environ.get(name, default)))
    except (TypeError, ValueError):
        return default


def _env_list(name: str) -> Tuple[str, ...]:
    return tuple(
        item.strip() for item in os.getenv(name, "").split(",") if item.strip()
    )


def load_env() -> None:
    env_path = Path(os.getenv("ENV_FILE", ".env"))
    load_dotenv(dotenv_path=env_path, override=False)

    _apply_env_alias("API_BASE_URL", ["BACKEND_BASE_URL"])

    if is_production_env() and not (os.getenv("API_BASE_URL") or "").strip():
        raise RuntimeError("API_BASE_URL must be set when running in production.")


def load_settings() -> Settings:
    load_env()
    return Settings(
        api_base_url=(os.getenv("API_BASE_URL") or "").strip() or None,
        request_timeout_sec=_env_float("REQUEST_TIMEOUT_SEC", 15.0),
        proxy_timeout_sec=_env_float("PROXY_TIMEOUT_SEC", 60.0),
        status_poll_interval_sec=_env_float("STATUS_POLL_INTERVAL_SEC", 2.0),
        status_poll_slow_interval_sec=_env_float("STATUS_POLL_SLOW_INTERVAL_SEC", 5.0),
        status_poll_max_sec=_env_float("STATUS_POLL_MAX_SEC", 1800.0),
        preview_poll_interval_sec=_env_float("PREVIEW_POLL_INTERVAL_SEC", 2.0),
        preview_poll_max_attempts=_env_int("PREVIEW_POLL_MAX_ATTEMPTS", 30),
        preview_frames_required=_env_int("PREVIEW_FRAMES_REQUIRED", 8),
        candidate_poll_interval_sec=_env_float("CANDIDATE_POLL_INTERVAL_SEC", 3.0),
        candidate_poll_max_attempts=_env_int("CANDIDATE_POLL_MAX_ATTEMPTS", 60),
        box_min_size=_env_float("BOX_MIN_SIZE", 0.01),
        box_max_size=_env_float("BOX_MAX_SIZE", 0.95),
        max_target_selections=_env_int("MAX_TARGET_SELECTIONS", 5),
        frame_proxy_allowed_hosts=_env_list("FRAME_PROXY_ALLOWED_HOSTS"),
        legacy_frame_origin=(os.getenv("LEGACY_FRAME_ORIGIN") or "").strip() or None,
        public_frame_origin=(os.getenv("PUBLIC_FRAME_ORIGIN") or "").strip() or None,
    )
