from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Phase durations in whole seconds (owner clock)
    pre_game_countdown_seconds: int = 5
    turn_countdown_seconds: int = 3
    audio_seconds: int = 15
    guessing_seconds: int = 15
    voting_seconds: int = 30

    # Every client polls the shared document once per tick
    tick_interval_seconds: float = 1.0

    # Turn rules
    max_defender_attempts: int = 3
    votes_needed: int = 2
    # Optional end condition; None = the owner ends the game manually
    win_score: Optional[int] = None

    # Shared state store: "memory" | "firestore" | "http"
    state_store_backend: str = "memory"
    relay_url: str = "http://localhost:8000"
    relay_timeout_seconds: float = 5.0

    google_cloud_project: str = ""
    google_application_credentials: str = ""
    firestore_emulator_host: Optional[str] = None
    sync_collection: str = "game_sync_states"
    song_collection: str = "user_song_stacks"

    # CORS origins — set ALLOWED_ORIGINS env var for production (comma-separated)
    allowed_origins: List[str] = [
        "http://localhost:8081",
        "http://localhost:19006",
        "http://127.0.0.1:8081",
    ]
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
