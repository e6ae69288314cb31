import json
import logging
from pathlib import Path
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ValidationError, field_validator

from threadchat.api.middleware.auth import get_current_user, TokenPayload
from threadchat.config import Settings
from threadchat.services.session_registry import SessionRegistry, get_session_registry

logger = logging.getLogger(__name__)

router = APIRouter()

SETTINGS_FILE = Path(__file__).resolve().parents[3] / "user_settings.json"


class LLMConfig(BaseModel):
    model_name: str = ""
    vision_model: str = ""
    title_model: str = ""
    base_url: str = ""
    api_key: str = ""


class Preferences(BaseModel):
    """Client-side preferences; stored and returned as-is."""
    theme: str = "system"  # "light" | "dark" | "system"
    language: str = "english"
    font_size: str = "medium"
    sound_effects: bool = True
    notifications: bool = True

    @field_validator("theme")
    @classmethod
    def known_theme(cls, v: str) -> str:
        return v if v in ("light", "dark", "system") else "system"


class UserSettings(BaseModel):
    llm: LLMConfig = LLMConfig()
    preferences: Preferences = Preferences()


def _load_settings() -> UserSettings:
    """Load user settings from JSON file, falling back to env defaults."""
    if SETTINGS_FILE.exists():
        try:
            data = json.loads(SETTINGS_FILE.read_text())
            return UserSettings(**data)
        except (ValueError, ValidationError):
            logger.warning("Ignoring unreadable %s", SETTINGS_FILE, exc_info=True)
    # Use a fresh Settings instance, NOT the cached singleton which
    # _apply_settings() may have modified in-place with stale values.
    fresh = Settings()
    return UserSettings(
        llm=LLMConfig(
            model_name=fresh.llm_model,
            vision_model=fresh.vision_model,
            title_model=fresh.title_model,
            base_url=fresh.llm_api_base,
            api_key=fresh.llm_api_key,
        ),
    )


def _save_settings(user_settings: UserSettings, registry: SessionRegistry | None = None) -> None:
    """Save user settings to JSON file and apply to running config."""
    SETTINGS_FILE.write_text(user_settings.model_dump_json(indent=2))
    _apply_settings(user_settings, registry)


def _apply_settings(user_settings: UserSettings, registry: SessionRegistry | None = None) -> None:
    """
    Apply user settings to the running process.

    The LLM client is rebuilt on any LLM change. A new chat model also drops
    every conversation in the registry, since their dialogue was produced by
    the old model.
    """
    from threadchat.config import get_settings as _get_settings

    # Clear the lru_cache so Settings re-reads
    _get_settings.cache_clear()
    settings = _get_settings()

    # Override the in-memory settings object
    if user_settings.llm.model_name:
        settings.llm_model = user_settings.llm.model_name
    if user_settings.llm.vision_model:
        settings.vision_model = user_settings.llm.vision_model
    if user_settings.llm.title_model:
        settings.title_model = user_settings.llm.title_model
    if user_settings.llm.base_url:
        settings.llm_api_base = user_settings.llm.base_url
    if user_settings.llm.api_key:
        settings.llm_api_key = user_settings.llm.api_key

    # Reset singleton services so they pick up new config
    import threadchat.services.llm_service as llm_mod
    llm_mod.reset_llm_service()

    if registry is not None:
        registry.clear_all_on_model_change(settings.llm_model)


class SettingsResponse(BaseModel):
    llm: LLMConfig
    preferences: Preferences


@router.get("/settings", response_model=SettingsResponse)
async def get_user_settings(
    _user: TokenPayload = Depends(get_current_user),
):
    """Get current LLM configuration and client preferences."""
    s = _load_settings()
    return SettingsResponse(llm=s.llm, preferences=s.preferences)


@router.put("/settings", response_model=SettingsResponse)
async def update_user_settings(
    payload: UserSettings,
    _user: TokenPayload = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Update LLM configuration and client preferences."""
    _save_settings(payload, registry)
    s = _load_settings()
    return SettingsResponse(llm=s.llm, preferences=s.preferences)
