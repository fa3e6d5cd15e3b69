"""
Configuration Management
Environment-backed settings plus layered YAML tunables

Secrets and connectivity come from the environment (.env); pipeline
tunables (fallback tariff, retry policies, dialer timings) come from
config/default.yaml and config/{environment}.yaml.
"""
import yaml
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic_settings import BaseSettings

from voipcore.domain.models.billing import Tariff


class Settings(BaseSettings):
    """Connectivity and secrets, read from the environment or .env"""

    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # API Settings
    api_prefix: str = "/api/v1"
    api_base_url: str = "http://localhost:8000"
    cors_origins: list[str] = ["http://localhost:3000"]

    # Storage: "memory" for local development, "supabase" in production
    storage_backend: str = "memory"
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None

    # Redis (realtime fan-out); empty disables publishing
    redis_url: str = "redis://localhost:6379"
    realtime_enabled: bool = False

    # Telephony
    telephony_provider: str = "twilio"
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_api_key_sid: Optional[str] = None
    twilio_api_key_secret: Optional[str] = None
    twilio_twiml_app_sid: Optional[str] = None
    twilio_validate_signature: bool = False
    telnyx_api_key: Optional[str] = None
    telnyx_connection_id: Optional[str] = None

    # AI analysis handoff
    analysis_url: Optional[str] = None
    analysis_api_key: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


CONFIG_DIR = Path(__file__).parent.parent.parent / "config"


class ConfigManager:
    """
    Pipeline tunables from layered YAML.

    config/default.yaml is read first and config/{env}.yaml is merged over
    it. String values of the form ${NAME} or ${NAME:-fallback} are expanded
    from the process environment after merging.
    """

    def __init__(self, env: str = "development", config_dir: Optional[Path] = None):
        self.env = env
        self.config_dir = Path(config_dir) if config_dir else CONFIG_DIR
        self._config: Dict[str, Any] = {}
        self.reload()

    def reload(self) -> None:
        self._config = {}
        for name in ("default", self.env):
            path = self.config_dir / f"{name}.yaml"
            if not path.exists():
                continue
            with open(path, "r", encoding="utf-8") as f:
                self._merge(self._config, yaml.safe_load(f) or {})
        self._config = self._expand_env(self._config)

    def _expand_env(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._expand_env(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._expand_env(value) for value in node]
        if isinstance(node, str) and node.startswith("${") and node.endswith("}"):
            name, _, fallback = node[2:-1].partition(":-")
            return os.getenv(name, fallback if fallback else node)
        return node

    @classmethod
    def _merge(cls, target: Dict, overlay: Dict) -> None:
        for key, value in overlay.items():
            current = target.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                cls._merge(current, value)
            else:
                target[key] = value

    def get(self, dotted: str, default: Any = None) -> Any:
        """Dotted lookup, e.g. get("dialer.wrap_up_seconds") -> 15"""
        node: Any = self._config
        for part in dotted.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def section(self, name: str) -> Dict[str, Any]:
        return dict(self.get(name, {}) or {})

    def fallback_tariff(self) -> Optional[Tariff]:
        """
        Tariff applied when no rate card matches.

        `billing.fallback_tariff: null` disables it, in which case an
        unmatched destination is a configuration error.
        """
        billing = self.section("billing")
        if "fallback_tariff" in billing and billing["fallback_tariff"] is None:
            return None
        data = billing.get("fallback_tariff") or {}
        return Tariff(
            rate_per_minute=Decimal(str(data.get("rate_per_minute", "0.15"))),
            increment_seconds=int(data.get("increment_seconds", 6)),
            connection_fee=Decimal(str(data.get("connection_fee", "0"))),
            destination_type=data.get("destination_type", "fallback"),
        )
