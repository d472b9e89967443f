from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "chunked-media-server"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    database_url: str = "sqlite:///./chunked_media_server.db"
    auto_create_schema: bool = True
    storage_root: str = "./data"
    staging_root: str = ""
    objects_root: str = ""
    max_chunk_size_bytes: int = 0
    copy_buffer_bytes: int = 1024 * 1024
    stream_block_bytes: int = 64 * 1024
    default_content_type: str = "video/mp4"
    recover_sessions_on_startup: bool = True
    cors_allow_origins: list[str] = ["*"]
    cors_allow_credentials: bool = True
    durable_backend: str = "none"
    durable_key_prefix: str = "media/"
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    r2_bucket: str = ""
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""
    tracing_enabled: bool = False
    tracing_service_name: str = "chunked-media-server"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True

    def staging_path(self) -> Path:
        return Path(self.staging_root) if self.staging_root else Path(self.storage_root) / "staging"

    def objects_path(self) -> Path:
        return Path(self.objects_root) if self.objects_root else Path(self.storage_root) / "objects"


settings = Settings()
