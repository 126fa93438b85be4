import os
from functools import lru_cache
from pydantic import BaseModel
from dotenv import load_dotenv

load_dotenv()

def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")

class Settings(BaseModel):
    env: str = os.getenv("ENV", "dev")
    base_url: str = os.getenv("APP_BASE_URL", "http://localhost:8000")

    # ASR (Deepgram pre-recorded API)
    deepgram_key: str | None = os.getenv("DEEPGRAM_API_KEY")
    deepgram_base: str = os.getenv("DEEPGRAM_BASE_URL", "https://api.deepgram.com")
    deepgram_model: str = os.getenv("DEEPGRAM_MODEL", "nova-2")
    deepgram_callback_url: str | None = os.getenv("DEEPGRAM_CALLBACK_URL")

    # LLM
    openai_key: str | None = os.getenv("OPENAI_API_KEY")
    summary_model: str = os.getenv("OPENAI_SUMMARY_MODEL", "gpt-4o-mini")

    # Email (Resend)
    resend_key: str = os.getenv("RESEND_API_KEY") or os.getenv("EMAIL_API_KEY", "")
    from_email: str = os.getenv("FROM_EMAIL", "")
    from_name: str = os.getenv("FROM_NAME", "SmartVoiceNotes")
    reply_to: str = os.getenv("REPLY_TO_EMAIL", "")

    # Storage (S3-compatible)
    s3_endpoint: str | None = os.getenv("S3_ENDPOINT")
    s3_region: str = os.getenv("S3_REGION", "us-west-004")
    recordings_bucket: str = os.getenv("RECORDINGS_BUCKET", "recordings")
    samples_bucket: str = os.getenv("SAMPLES_BUCKET", "public_redacted_samples")
    signed_url_ttl: int = int(os.getenv("SIGNED_URL_TTL_SECONDS", "3600"))

    # Redaction
    redaction_enabled: bool = _flag("REDACTION_ENABLED")
    redaction_original_offsets: bool = _flag("REDACTION_ORIGINAL_OFFSETS")
    presidio_analyzer_url: str = os.getenv("PRESIDIO_ANALYZER_URL", "")
    presidio_anonymizer_url: str = os.getenv("PRESIDIO_ANONYMIZER_URL", "")

    # Collaborators
    transcode_fallback_url: str = os.getenv("TRANSCODE_FALLBACK_URL", "")
    webhook_secret: str = os.getenv("WEBHOOK_SECRET", "")
    service_token: str = os.getenv("SERVICE_TOKEN", "")

    # Auth
    jwt_secret: str = os.getenv("JWT_SECRET", os.getenv("APP_SECRET", "change-me"))
    jwt_alg: str = os.getenv("JWT_ALG", "HS256")
    dev_allow_no_auth: bool = _flag("DEV_ALLOW_NO_AUTH")

    idempotency_ttl_hours: int = int(os.getenv("IDEMPOTENCY_TTL_HOURS", "24"))

    @property
    def presidio_configured(self) -> bool:
        return bool(self.presidio_analyzer_url.strip() and self.presidio_anonymizer_url.strip())

@lru_cache
def get_settings() -> Settings:
    return Settings()
