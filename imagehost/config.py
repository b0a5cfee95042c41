from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "imagehost"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    public_base_url: str = "http://localhost:8000"
    database_url: str = "sqlite:///./imagehost.db"
    database_auto_create: bool = True
    storage_backend: str = "local"
    storage_root: str = "./data"
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    r2_bucket: str = ""
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""
    presigned_url_ttl_seconds: int = 3600
    auth_mode: str = "api_key"
    api_key_mappings: str = "dev-key:dev-user"
    admin_user_ids: str = "dev-user"
    api_rate_limit_per_minute: int = 0
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""
    jwt_issuer: str = ""
    tracing_enabled: bool = False
    tracing_service_name: str = "imagehost"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    part_size_bytes: int = 5 * 1024 * 1024
    max_parts_per_upload: int = 100
    upload_session_ttl_seconds: int = 86400
    max_inflight_parts_per_upload: int = 8
    max_inflight_part_bytes: int = 256 * 1024 * 1024
    allowed_mime_types: str = "image/jpeg,image/png,image/gif,image/webp"
    max_image_upload_bytes: int = 50 * 1024 * 1024
    max_batch_files: int = 100
    sweep_enabled: bool = True
    sweep_interval_seconds: int = 60
    short_code_length: int = 6
    short_code_attempts_per_length: int = 5
    short_code_max_length: int = 16
    image_processing_enabled: bool = True
    image_max_width: int = 1920
    image_max_height: int = 1080
    image_quality: int = 80
    image_output_format: str = ""
    image_watermark_text: str = ""
    geoip_database_path: str = ""
    trust_forwarded_for: bool = False

    def allowed_mime_type_set(self) -> frozenset[str]:
        return frozenset(item.strip().lower() for item in self.allowed_mime_types.split(",") if item.strip())


settings = Settings()
