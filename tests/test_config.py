import pytest

from streamux.config import Settings
from streamux.errors import ConfigurationError


class TestSettings:

    def test_reads_keys_from_environ(self):
        settings = Settings.from_env(env_file=None, environ={
            "OPENAI_API_KEY": "sk-openai",
            "ANTHROPIC_API_KEY": "sk-ant",
            "STREAMUX_MAX_RETRIES": "5",
        })
        assert settings.openai_api_key == "sk-openai"
        assert settings.api_key_for("anthropic") == "sk-ant"
        assert settings.api_key_for("deepseek") is None
        assert settings.max_retries == 5

    def test_defaults(self):
        settings = Settings.from_env(env_file=None, environ={})
        assert settings.max_retries == 3
        assert settings.log_level == "INFO"

    def test_gemini_key_fallback(self):
        settings = Settings.from_env(env_file=None, environ={"GEMINI_API_KEY": "g-key"})
        assert settings.api_key_for("google") == "g-key"

    def test_env_file_is_overridden_by_environ(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("OPENAI_API_KEY=from-file\nDEEPSEEK_API_KEY=ds-file\n")
        settings = Settings.from_env(env_file=str(env_file), environ={"OPENAI_API_KEY": "from-env"})
        assert settings.openai_api_key == "from-env"
        assert settings.deepseek_api_key == "ds-file"

    def test_missing_env_file_is_ignored(self, tmp_path):
        settings = Settings.from_env(env_file=str(tmp_path / "absent.env"), environ={})
        assert settings.openai_api_key is None

    def test_bad_retry_count(self):
        with pytest.raises(ConfigurationError):
            Settings.from_env(env_file=None, environ={"STREAMUX_MAX_RETRIES": "lots"})

    def test_unknown_provider_has_no_key(self):
        assert Settings(openai_api_key="x").api_key_for("nobody") is None

    def test_process_environment_is_the_default(self, mock_env):
        settings = Settings.from_env(env_file=None)
        assert settings.api_key_for("openrouter") == "sk-test-openrouter"
        assert settings.api_key_for("google") == "AIza-test-google"
