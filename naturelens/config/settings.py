from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Gemini
    gemini_api_key: str = ""
    classification_model: str = "gemini-3-pro-preview"  # high quality vision
    caption_model: str = "gemini-2.5-flash-lite-latest"  # low latency
    summary_model: str = "gemini-2.5-flash"  # used with Google Search grounding
    image_model: str = "gemini-3-pro-image-preview"
    edit_model: str = "gemini-2.5-flash-image"

    # Durable state
    database_url: str = "sqlite+aiosqlite:///data/naturelens.db"
    storage_namespace: str = "naturelens-data"

    # Collection
    recent_photos_limit: int = 10
    reject_unknown_species: bool = False  # False keeps "Unknown" as a regular album

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
