"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # HTTP
    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: str = "*"  # comma-separated

    # Job processing
    max_concurrent_jobs: int = 2
    process_timeout_seconds: float = 432000
    termination_grace_seconds: float = 10
    job_retention_hours: float = 2
    max_retained_jobs: int = 500  # 0 = unlimited
    sweep_interval_seconds: float = 300

    # External tool
    ffmpeg_path: Optional[str] = None
    protocol_whitelist: str = "file,http,https,tcp,tls,crypto"
    audio_bitstream_filter: str = "aac_adtstoasc"
    stderr_excerpt_chars: int = 500

    # Artifact storage
    storage_backend: str = "local"  # "local" or "supabase"
    downloads_dir: str = "public/downloads"
    public_downloads_path: str = "/downloads"
    output_extension: str = "mp4"

    # Supabase (only when storage_backend=supabase)
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_bucket: str = "conversions"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def cors_origin_list(self) -> list:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
