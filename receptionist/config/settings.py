"""
Configuration settings for the receptionist orchestrator.
Centralizes all environment variables and configuration constants.
"""

import re
from typing import Optional
from pydantic import validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Twilio Configuration
    twilio_account_sid: str
    twilio_auth_token: str

    # OpenAI Configuration
    openai_api_key: str
    # Supervisor model for HTTP completions
    openai_chat_model: str = "gpt-4o"
    # Cheaper model used by the front agent on text channels
    openai_front_model: str = "gpt-4o-mini"
    openai_realtime_model: str = "gpt-4o-realtime-preview-2024-12-17"
    openai_realtime_url: str = "wss://api.openai.com/v1/realtime"
    openai_realtime_voice: str = "sage"
    openai_transcription_model: str = "gpt-4o-mini-transcribe"
    openai_max_tokens: int = 512
    openai_temperature: float = 0.6

    # Retell Configuration (used as webhook signing secret)
    retell_api_key: str = ""

    # Tenant resolution
    default_organization_id: Optional[str] = None
    organization_cache_ttl_seconds: int = 300
    channel_config_cache_ttl_seconds: int = 60

    # Supervisor loop
    supervisor_max_iterations: int = 12
    supervisor_expose_full_catalog: bool = False

    # Local availability search
    slot_granularity_minutes: int = 60
    office_opening_time: str = "09:00"
    office_closing_time: str = "17:00"
    office_lookahead_days: int = 14
    default_appointment_minutes: int = 30

    # Booking API
    booking_api_url: str = "http://localhost:8000/api/v1/booking"
    scheduling_backend_url: str = "http://localhost:9000/booking"
    internal_api_key: str = "change-me-internal-key"
    booking_timeout_seconds: int = 30
    booking_retry_count: int = 2

    # Recordings
    recording_storage_dir: str = "recordings"

    # Notifications
    notification_recheck_delay_seconds: float = 5.0
    notification_max_rechecks: int = 3
    notification_min_duration_ms: int = 10000
    resend_api_key: str = ""
    resend_api_url: str = "https://api.resend.com"
    notification_from_email: str = "Receptionist <notifications@example.com>"

    # Web chat sessions
    web_session_idle_seconds: int = 900

    # SMS and WhatsApp threads
    text_session_idle_seconds: int = 1800
    evolution_api_url: str = ""
    evolution_api_key: str = ""

    # JWT Configuration (browser callers)
    jwt_secret_key: str = "your-secret-key-here"  # In production, use a secure secret key
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 10080
    session_cookie_name: str = "access_token"

    # Server Configuration
    domain: str = ""
    port: int = 8000

    database_url: str = "sqlite:///./receptionist.db"
    sql_echo: bool = False

    log_level: str = "INFO"

    @validator('domain')
    def clean_domain(cls, v: str) -> str:
        """Clean domain by stripping protocols and trailing slashes."""
        return re.sub(r'(^\w+:|^)\/\/|\/+$', '', v)

    @validator('slot_granularity_minutes', 'supervisor_max_iterations')
    def validate_positive(cls, v: int) -> int:
        """Loop caps and search steps must be positive."""
        if v <= 0:
            raise ValueError('must be a positive integer')
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()

# Validate required settings
def validate_settings():
    """Validate that all required settings are present."""
    required_vars = [
        'twilio_account_sid', 'twilio_auth_token', 'openai_api_key'
    ]

    missing_vars = []
    for var in required_vars:
        if not getattr(settings, var):
            missing_vars.append(var.upper())

    if missing_vars:
        raise ValueError(
            f'Missing required environment variables: {", ".join(missing_vars)}. '
            'Please set them in the .env file.'
        )

# Validate settings on import
validate_settings()
