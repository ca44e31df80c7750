"""User preferences: API credential, default temperature and system prompt.

Values live in the ``settings`` table as strings. Nothing is written back
until the stored values have been loaded once, so a fresh process cannot
clobber saved preferences with its defaults.
"""

from dataclasses import dataclass

import structlog

from llmchat.core.database import ChatRepository

logger = structlog.get_logger(__name__)

API_KEY_KEY = "openrouter_api_key"
TEMPERATURE_KEY = "default_temperature"
SYSTEM_PROMPT_KEY = "default_system_prompt"

DEFAULT_TEMPERATURE = 0.7


@dataclass
class Settings:
    """Current preference values.

    Attributes:
        api_key: OpenRouter bearer credential, empty when not configured.
        temperature: Sampling temperature for chat completions.
        system_prompt: Prepended as a system message when non-blank.
    """
    api_key: str = ""
    temperature: float = DEFAULT_TEMPERATURE
    system_prompt: str = ""


def _parse_temperature(raw: str | None) -> float:
    if raw is None:
        return DEFAULT_TEMPERATURE
    try:
        return float(raw)
    except ValueError:
        logger.warning("settings.bad_temperature", value=raw)
        return DEFAULT_TEMPERATURE


class SettingsStore:
    """Holds the preferences and mirrors changes into the repository."""

    def __init__(self, repository: ChatRepository):
        self._repository = repository
        self.settings = Settings()
        self.loaded = False

    @property
    def has_credential(self) -> bool:
        return bool(self.settings.api_key.strip())

    def load(self) -> Settings:
        """Read stored preferences, keeping defaults for missing keys."""
        self.settings = Settings(
            api_key=self._repository.get_setting(API_KEY_KEY) or "",
            temperature=_parse_temperature(self._repository.get_setting(TEMPERATURE_KEY)),
            system_prompt=self._repository.get_setting(SYSTEM_PROMPT_KEY) or "",
        )
        self.loaded = True
        logger.info("settings.loaded", has_credential=self.has_credential)
        return self.settings

    def save(self) -> bool:
        """Persist current values.

        Returns:
            False if skipped because load() has not run yet.
        """
        if not self.loaded:
            logger.debug("settings.save_skipped", reason="not_loaded")
            return False
        self._repository.set_settings({
            API_KEY_KEY: self.settings.api_key,
            TEMPERATURE_KEY: str(self.settings.temperature),
            SYSTEM_PROMPT_KEY: self.settings.system_prompt,
        })
        return True

    def change_api_key(self, api_key: str) -> None:
        self.settings.api_key = api_key
        self.save()

    def change_temperature(self, temperature: float) -> None:
        self.settings.temperature = temperature
        self.save()

    def change_system_prompt(self, system_prompt: str) -> None:
        self.settings.system_prompt = system_prompt
        self.save()
