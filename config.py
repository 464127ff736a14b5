"""
Central configuration for the purchase order extractor.

All paths, model settings, and Fortnox endpoints are defined here.
Override via environment variables or by passing a Config instance directly.

Settings priority (highest wins):
  1. Environment variables
  2. config/pipeline_settings.json  (admin-editable, persisted)
  3. Hardcoded defaults in this file
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Project root (directory containing this file)
PROJECT_ROOT = Path(__file__).parent

DEFAULT_UPLOAD_DIR = PROJECT_ROOT / "uploads"
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024   # 10 MB


def _config_dir() -> Path:
    return Path(os.getenv("CONFIG_DIR", str(PROJECT_ROOT / "config")))


def _parse_flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in ("false", "0", "no")


def _env_flag(name: str, default: str = "true") -> bool:
    return _parse_flag(os.getenv(name, default))


@dataclass
class Config:
    # --- LLM settings (OpenAI-compatible API) ---
    # The model must accept image input and JSON mode.
    #
    # OpenAI (default):  LLM_BASE_URL=https://api.openai.com/v1   OPENAI_API_KEY=sk-...
    # Azure / proxies:   LLM_BASE_URL=https://<host>/v1           LLM_API_KEY=...
    llm_model: str = field(
        default_factory=lambda: os.getenv("LLM_MODEL", "gpt-4o")
    )
    llm_base_url: str = field(
        default_factory=lambda: os.getenv("LLM_BASE_URL", "https://api.openai.com/v1")
    )
    llm_api_key: str = field(
        default_factory=lambda: os.getenv("OPENAI_API_KEY", os.getenv("LLM_API_KEY", ""))
    )
    llm_max_tokens: int = field(
        default_factory=lambda: int(os.getenv("LLM_MAX_TOKENS", "4096"))
    )

    # --- Rasterizer ---
    raster_dpi: int = field(
        default_factory=lambda: int(os.getenv("RASTER_DPI", "300"))
    )

    # --- Uploads ---
    upload_dir: Path = field(
        default_factory=lambda: Path(os.getenv("UPLOAD_DIR", str(DEFAULT_UPLOAD_DIR)))
    )
    max_upload_bytes: int = field(
        default_factory=lambda: int(os.getenv("MAX_UPLOAD_BYTES", str(DEFAULT_MAX_UPLOAD_BYTES)))
    )

    # --- Timeouts (seconds) ---
    extraction_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("EXTRACTION_TIMEOUT", "0"))
    )
    # 0 disables the extraction timeout; a hung model call then stalls that item.
    http_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("HTTP_TIMEOUT", "30"))
    )

    # --- Fortnox ---
    fortnox_api_url: str = field(
        default_factory=lambda: os.getenv("FORTNOX_API_URL", "https://api.fortnox.se")
    )
    fortnox_auth_url: str = field(
        default_factory=lambda: os.getenv("FORTNOX_AUTH_URL", "https://apps.fortnox.se/oauth-v1")
    )
    fortnox_scopes: str = field(
        default_factory=lambda: os.getenv(
            "FORTNOX_SCOPES", "companyinformation article warehouse supplier"
        )
    )
    fortnox_redirect_uri: str = field(
        default_factory=lambda: os.getenv(
            "FORTNOX_REDIRECT_URI", "http://localhost:3000/oauth-callback"
        )
    )

    # Static fallback credentials. Only consulted when a caller supplies none,
    # and every use is logged as a warning (the token may be stale).
    fortnox_access_token: Optional[str] = field(
        default_factory=lambda: os.getenv("FORTNOX_ACCESS_TOKEN")
    )
    fortnox_client_secret: Optional[str] = field(
        default_factory=lambda: os.getenv("FORTNOX_CLIENT_SECRET")
    )
    fortnox_allow_env_fallback: bool = field(
        default_factory=lambda: _env_flag("FORTNOX_ALLOW_ENV_FALLBACK")
    )

    # --- Credential store ---
    credentials_path: Path = field(
        default_factory=lambda: Path(
            os.getenv("CREDENTIALS_PATH", str(_config_dir() / "api_keys.json"))
        )
    )

    # --- HTTP surface ---
    api_base_url: str = field(
        default_factory=lambda: os.getenv("API_BASE_URL", "http://localhost:3000")
    )
    port: int = field(
        default_factory=lambda: int(os.getenv("PORT", "3000"))
    )

    def __post_init__(self) -> None:
        """Overlay runtime-tunable settings from pipeline_settings.json if present."""
        settings_file = _config_dir() / "pipeline_settings.json"
        if not settings_file.exists():
            return
        # key -> (parser, env var that takes precedence over the file)
        _type_map: dict[str, tuple[Callable, str]] = {
            "llm_model":                  (str,   "LLM_MODEL"),
            "llm_max_tokens":             (int,   "LLM_MAX_TOKENS"),
            "raster_dpi":                 (int,   "RASTER_DPI"),
            "max_upload_bytes":           (int,   "MAX_UPLOAD_BYTES"),
            "extraction_timeout_seconds": (float, "EXTRACTION_TIMEOUT"),
            "http_timeout_seconds":       (float, "HTTP_TIMEOUT"),
            "fortnox_scopes":             (str,   "FORTNOX_SCOPES"),
            "fortnox_redirect_uri":       (str,   "FORTNOX_REDIRECT_URI"),
            "fortnox_allow_env_fallback": (_parse_flag, "FORTNOX_ALLOW_ENV_FALLBACK"),
            "api_base_url":               (str,   "API_BASE_URL"),
        }
        try:
            with open(settings_file, encoding="utf-8") as f:
                overrides = {k: v for k, v in json.load(f).items() if not k.startswith("_")}
            for key, val in overrides.items():
                if key not in _type_map or not hasattr(self, key):
                    continue
                cast, env_name = _type_map[key]
                if env_name in os.environ:
                    continue
                setattr(self, key, cast(val))
        except Exception as exc:
            logger.warning("Failed to load pipeline_settings.json: %s", exc)

    def ensure_upload_dir(self) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
