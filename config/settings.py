from enum import StrEnum
from pathlib import Path

from pydantic_settings import BaseSettings


class ModelFamily(StrEnum):
    GPT = "gpt"
    GEMINI = "gemini"
    CLAUDE = "claude"
    OLLAMA = "ollama"
    EMBEDDING = "embedding"
    NONE = "none"


class Settings(BaseSettings):
    # Ollama (local vision + text embeddings)
    ollama_base_url: str = "http://ollama:11434"
    ollama_model: str = "qwen2.5vl:7b"
    ollama_embedding_model: str = "nomic-embed-text"

    # Cloud providers (optional)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4.1"
    openai_embedding_model: str = "text-embedding-3-small"
    claude_api_key: str = ""
    claude_model: str = "claude-sonnet-4-5-20250929"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"

    # Text embeddings: "ollama" or "openai"
    embedding_provider: str = "ollama"
    # CLIP-style image embeddings service
    clip_base_url: str = "http://embeddings:8000"

    # Database
    database_url: str = "sqlite+aiosqlite:///data/analyzer.db"

    # Photos
    photos_dir: Path = Path("data/photos")
    image_cache_size: int = 512  # photo images kept per run
    image_load_concurrency: int = 8

    # Direct API
    direct_max_concurrency: int = 5  # parallel sub-batches per task

    # Batch API
    batch_photos_per_batch: int = 200
    batch_photos_per_request: int = 4
    batch_max_concurrency: int = 5  # large batches in flight
    batch_poll_interval: float = 5.0  # seconds
    batch_max_attempts: int = 3
    batch_max_polls: int = 17280  # 24h at the default interval

    # Embeddings
    embeddings_batch_size: int = 200
    embeddings_concurrency: int = 3

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
