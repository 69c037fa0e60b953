from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    # Core
    env: str = Field(default="prod", alias="DOCSIGN_ENV")
    log_level: str = Field(default="INFO", alias="DOCSIGN_LOG_LEVEL")

    # Stores: in-memory unless a URL is configured
    database_url: str | None = Field(default=None, alias="DATABASE_URL")
    redis_url: str | None = Field(default=None, alias="REDIS_URL")

    allowed_origins: str = Field(default="*", alias="DOCSIGN_ALLOWED_ORIGINS")
    max_body_bytes: int = Field(default=1_000_000, alias="DOCSIGN_MAX_BODY_BYTES")

    # Multi-signature policy
    min_signers: int = 2
    max_signers: int = 5
    default_threshold: int = 2
    session_ttl_days: int = Field(default=7, alias="DOCSIGN_SESSION_TTL_DAYS")

    # QR payloads
    qr_max_embedded_bytes: int = 2000
    qr_payload_ttl_days: int = Field(default=30, alias="DOCSIGN_QR_PAYLOAD_TTL_DAYS")
    qr_hash_prefix_len: int = 16
    verification_url_prefix: str = "/verification"
    qr_image_scale: int = 4
    verify_batch_max: int = 10

    model_config = {"populate_by_name": True, "env_file": ".env", "extra": "ignore"}

    @property
    def allowed_origins_list(self):
        v = (self.allowed_origins or "*").strip()
        if v == "*" or v == "":
            return ["*"]
        return [x.strip() for x in v.split(",") if x.strip()]


settings = Settings()
