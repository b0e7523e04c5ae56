from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "orderhub-uploads"
    app_version: str = "dev"
    database_url: str = "sqlite:///./orderhub.db"
    storage_backend: str = "local"
    storage_root: str = "./storage"
    public_url_base: str = "/storage"
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    r2_bucket: str = ""
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""
    auth_mode: str = "api_key"
    api_key_mappings: str = "dev-key:1"
    admin_user_ids: str = "1"
    api_rate_limit_per_minute: int = 0
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""
    jwt_issuer: str = ""
    tracing_enabled: bool = False
    tracing_service_name: str = "orderhub-uploads"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    recommended_chunk_size_bytes: int = 1024 * 1024
    max_chunk_bytes: int = 2 * 1024 * 1024
    max_total_chunks: int = 10000
    max_file_size_bytes: int = 5 * 1024 * 1024 * 1024
    max_filename_length: int = 255
    merge_copy_buffer_bytes: int = 1024 * 1024
    merge_lease_seconds: int = 600
    auto_create_schema: bool = True
    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 3600
    stale_session_ttl_hours: int = 24


settings = Settings()
