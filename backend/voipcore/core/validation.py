"""
Provider Validation Module
Validates provider and storage configuration on startup
"""
import os
import logging
from typing import List, Tuple
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of a configuration validation check."""
    provider: str
    setting: str
    is_valid: bool
    message: str


class ProviderValidator:
    """
    Validates provider configurations at startup.

    Only the selected telephony provider and storage backend are checked;
    the others may be left unconfigured.
    """

    # Required environment variables by provider
    REQUIRED_ENV_VARS = {
        "twilio": [
            ("TWILIO_ACCOUNT_SID", "Twilio telephony"),
            ("TWILIO_AUTH_TOKEN", "Twilio telephony"),
        ],
        "telnyx": [
            ("TELNYX_API_KEY", "Telnyx telephony"),
            ("TELNYX_CONNECTION_ID", "Telnyx telephony"),
        ],
        "supabase": [
            ("SUPABASE_URL", "Supabase database"),
            ("SUPABASE_SERVICE_KEY", "Supabase database"),
        ],
    }

    # Optional but recommended
    OPTIONAL_ENV_VARS = {
        "twilio": [
            ("TWILIO_API_KEY_SID", "Twilio API key (voice tokens)"),
            ("TWILIO_API_KEY_SECRET", "Twilio API key secret (voice tokens)"),
            ("TWILIO_TWIML_APP_SID", "Twilio TwiML app (voice tokens)"),
        ],
        "analysis": [("ANALYSIS_URL", "AI analysis handoff")],
        "cache": [("REDIS_URL", "Redis realtime fan-out")],
    }

    def __init__(self, strict: bool = False):
        """
        Args:
            strict: If True, treat warnings as errors
        """
        self.strict = strict
        self.results: List[ValidationResult] = []

    @property
    def errors(self) -> List[ValidationResult]:
        return [r for r in self.results if not r.is_valid]

    def _record(self, provider: str, setting: str, is_valid: bool, message: str, warning: bool = False):
        if warning:
            # Warnings become errors in strict mode
            is_valid = not self.strict
            message = f"WARNING: {message}"
        self.results.append(ValidationResult(provider, setting, is_valid, message))

    def _selected(self) -> List[str]:
        telephony = os.getenv("TELEPHONY_PROVIDER", "twilio").lower()
        storage = os.getenv("STORAGE_BACKEND", "memory").lower()
        selected = [telephony]
        if storage == "supabase":
            selected.append("supabase")
        else:
            self._record("storage", "STORAGE_BACKEND", True, "in-memory storage, data is lost on restart", warning=True)
        return selected

    def validate_all(self) -> Tuple[bool, List[ValidationResult]]:
        """
        Validate the selected provider configurations.

        Returns:
            Tuple of (all_valid, list of results)
        """
        self.results = []
        selected = self._selected()

        for provider in selected:
            for env_var, description in self.REQUIRED_ENV_VARS.get(provider, []):
                if os.getenv(env_var):
                    self._record(provider, env_var, True, f"{description} configured")
                else:
                    self._record(provider, env_var, False, f"{description} requires {env_var} to be set")

        for provider, vars_list in self.OPTIONAL_ENV_VARS.items():
            if provider in self.REQUIRED_ENV_VARS and provider not in selected:
                continue
            for env_var, description in vars_list:
                if os.getenv(env_var):
                    self._record(provider, env_var, True, f"{description} configured")
                else:
                    self._record(provider, env_var, True, f"{description} not configured (optional)", warning=True)

        return not self.errors, self.results


def validate_providers_on_startup(strict: bool = False) -> None:
    """
    Validate providers at startup.

    Warnings are logged and only fail startup in strict mode.

    Raises:
        RuntimeError: If required configuration is missing
    """
    validator = ProviderValidator(strict=strict)
    all_valid, results = validator.validate_all()

    for r in results:
        if r.is_valid and r.message.startswith("WARNING"):
            logger.warning(f"[{r.provider}] {r.message}")

    if not all_valid:
        raise RuntimeError(
            "Provider configuration errors: "
            + "; ".join(f"{r.setting}: {r.message}" for r in validator.errors)
        )

    logger.info(f"Provider configuration validated ({len(results)} settings checked)")
