"""
Gateway settings loaded from the environment and an optional ``.env`` file.
"""
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values

from .errors import ConfigurationError

# Provider id -> environment variable holding its API key
API_KEY_VARS: Dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}


@dataclass
class Settings:
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    google_api_key: Optional[str] = None
    deepseek_api_key: Optional[str] = None
    openrouter_api_key: Optional[str] = None
    max_retries: int = 3
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[str] = ".env",
                 environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from ``env_file`` overlaid with the process environment.

        Real environment variables win over values in the file.

        Raises:
            ConfigurationError: If ``STREAMUX_MAX_RETRIES`` is not an integer.
        """
        values: Dict[str, Optional[str]] = {}
        if env_file and os.path.exists(env_file):
            values.update(dotenv_values(env_file))
        values.update(os.environ if environ is None else environ)

        raw_retries = values.get("STREAMUX_MAX_RETRIES") or "3"
        try:
            max_retries = int(raw_retries)
        except ValueError:
            raise ConfigurationError(
                f"STREAMUX_MAX_RETRIES must be an integer, got {raw_retries!r}",
                details={"STREAMUX_MAX_RETRIES": raw_retries},
            )

        return cls(
            openai_api_key=values.get("OPENAI_API_KEY") or None,
            anthropic_api_key=values.get("ANTHROPIC_API_KEY") or None,
            google_api_key=values.get("GOOGLE_API_KEY") or values.get("GEMINI_API_KEY") or None,
            deepseek_api_key=values.get("DEEPSEEK_API_KEY") or None,
            openrouter_api_key=values.get("OPENROUTER_API_KEY") or None,
            max_retries=max_retries,
            log_level=values.get("STREAMUX_LOG_LEVEL") or "INFO",
        )

    def api_key_for(self, provider: str) -> Optional[str]:
        return getattr(self, f"{provider}_api_key", None)
