from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings loaded from environment variables.

    Create a .env file in the backend directory to override defaults.
    See .env.example for all available options.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # AI fallback gate
    use_ai: bool = True
    ai_confidence_threshold: float = 0.5
    ai_batch_size: int = 3  # Also the concurrency ceiling for outbound calls
    ai_batch_delay_ms: int = 100

    # Inference backend (OpenAI-compatible chat completions)
    inference_base_url: str = "https://api.openai.com/v1"
    inference_api_key: str = ""
    inference_model: str = "gpt-3.5-turbo"
    inference_timeout: float = 30.0
    inference_max_tokens: int = 500
    inference_temperature: float = 0.1
    inference_max_retries: int = 3
    inference_base_delay: float = 1.0
    inference_max_delay: float = 10.0

    # Result cache
    cache_max_size: int = 1000
    cache_max_age_seconds: float = 7 * 24 * 60 * 60
    cache_compression_threshold: int = 1024  # bytes of serialized JSON
    cache_snapshot_path: str = "./data/ai_cache.json"  # Empty disables persistence

    # Language detection
    enable_language_detection: bool = True
    language_min_length: int = 10
    language_max_length: int = 10000
    language_cache_ttl_seconds: float = 300.0
    language_cache_max_size: int = 1000

    # Watermark detection
    enable_watermark_detection: bool = True
    watermark_min_occurrences: int = 3
    watermark_page_overlap_threshold: float = 0.5
    watermark_min_length: int = 5
    watermark_max_length: int = 100
    watermark_filter_confidence: float = 0.5

    # Handwriting / signature detection
    enable_signature_detection: bool = True
    ocr_worker_pool_size: int = 2
    tesseract_config: str = "--psm 6"

    # Known counterparties for fuzzy matching
    client_directory_path: str = "./config/clients.json"

    def get_inference_config(self) -> dict:
        """Get inference client configuration."""
        return {
            "base_url": self.inference_base_url,
            "api_key": self.inference_api_key,
            "model": self.inference_model,
            "timeout": self.inference_timeout,
            "max_tokens": self.inference_max_tokens,
            "temperature": self.inference_temperature,
            "max_retries": self.inference_max_retries,
            "base_delay": self.inference_base_delay,
            "max_delay": self.inference_max_delay,
            "max_concurrent": self.ai_batch_size,
        }

    def get_watermark_options(self) -> dict:
        """Get watermark detector options."""
        return {
            "min_occurrences": self.watermark_min_occurrences,
            "page_overlap_threshold": self.watermark_page_overlap_threshold,
            "min_length": self.watermark_min_length,
            "max_length": self.watermark_max_length,
        }


@lru_cache
def get_settings() -> Settings:
    """Settings for the web layer. Services receive them through their constructors."""
    return Settings()
