from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_key: str = ""
    supabase_anon_key: str = ""
    supabase_jwt_secret: str = ""

    # LLM (OpenAI-compatible API - Gemini's OpenAI endpoint, OpenRouter, Ollama, etc.)
    llm_api_base: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    llm_api_key: str = ""
    llm_model: str = "gemini-2.0-flash-001"
    vision_model: str = "gemini-1.5-pro-002"  # used only for image attachments
    title_model: str = "gemini-2.0-flash-lite-001"  # cheapest model, titles only
    llm_temperature: float = 0.7
    llm_top_p: float = 0.95
    llm_max_output_tokens: int = 8192

    # Conversation context
    history_window: int = 20  # persisted messages used to seed a fresh conversation
    summary_char_limit: int = 150  # per-message budget inside the seed
    seed_timeout_seconds: float = 30.0

    # Chats
    placeholder_title: str = "New Chat"
    assistant_display_name: str = "Gemini"

    # Attachments (Supabase Storage)
    attachments_bucket: str = "chat-attachments"
    attachment_max_bytes: int = 10 * 1024 * 1024  # 10MB

    # Account sessions
    session_refresh_margin_minutes: int = 10

    # Observability
    langsmith_api_key: str = ""
    langsmith_endpoint: str = "https://eu.api.smith.langchain.com"
    langsmith_project: str = "threadchat"

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
