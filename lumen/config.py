from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    # Vendor credentials
    openai_api_key: str = ''
    elevenlabs_api_key: str = ''
    elevenlabs_voice_id: str = '9BWtsMINqrJLrRacOk9x'  # Aria
    assemblyai_api_key: str = ''
    google_api_key: str = ''
    hugging_face_access_token: str = ''

    # Supabase settings
    supabase_url: str = ''
    supabase_key: str = ''
    functions_url: Optional[str] = None

    # Chat model (Gemini through its OpenAI-compatible endpoint)
    chat_model: str = 'gemini-1.5-flash'
    chat_base_url: str = GEMINI_OPENAI_BASE_URL

    # Narration tuning
    chars_per_second: float = 15.0
    position_poll_interval: float = 0.5

    # Speech-to-text polling
    transcription_max_attempts: int = 30
    transcription_poll_interval: float = 1.0

    log_level: str = 'INFO'

    @property
    def edge_functions_url(self) -> str:
        if self.functions_url:
            return self.functions_url.rstrip('/')
        return f"{self.supabase_url.rstrip('/')}/functions/v1"


def get_settings() -> Settings:
    return Settings()
