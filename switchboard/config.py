"""Configuration management for Switchboard."""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Application configuration."""

    # Shared datastore
    # SQLite is fine for local development; production runs on PostgreSQL.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./switchboard.db")

    # Celery broker/backend (ring timeouts + parked-call sweep)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Twilio Configuration
    TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "")
    TWILIO_CALLER_ID: str = os.getenv("TWILIO_CALLER_ID", "")

    # Application Settings
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"
    BASE_URL: str = os.getenv("BASE_URL", "http://localhost:8000")  # For webhooks - use ngrok URL in production
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Ringing
    # How long an inbound call is offered to agents before it is marked missed.
    # Also bounds how long a claim keeps retrying against an unreachable store.
    RING_TIMEOUT_SECONDS: int = int(os.getenv("RING_TIMEOUT_SECONDS", "30"))
    # Extra slack before the sweep expires a ringing call whose timeout task was lost.
    RING_GRACE_SECONDS: int = int(os.getenv("RING_GRACE_SECONDS", "15"))

    # Parking
    PARK_MAX_AGE_SECONDS: int = int(os.getenv("PARK_MAX_AGE_SECONDS", "1800"))
    SWEEP_INTERVAL_SECONDS: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
    HOLD_MUSIC_URL: str = os.getenv(
        "HOLD_MUSIC_URL",
        "http://com.twilio.sounds.music.s3.amazonaws.com/MARKOVICHAMP-Borghestral.mp3",
    )

    # Retry policy
    STORE_RETRY_BASE_DELAY: float = float(os.getenv("STORE_RETRY_BASE_DELAY", "0.2"))
    PROVIDER_MAX_RETRIES: int = int(os.getenv("PROVIDER_MAX_RETRIES", "2"))
    PROVIDER_RETRY_BASE_DELAY: float = float(os.getenv("PROVIDER_RETRY_BASE_DELAY", "0.5"))

    # TwiML <Say> voice for caller-facing prompts
    VOICE_NAME: str = os.getenv("VOICE_NAME", "alice")

    # Security
    API_KEY: str = os.getenv("API_KEY", "")  # For API authentication

    @classmethod
    def has_twilio_config(cls) -> bool:
        """Check if Twilio configuration is complete."""
        return all([
            cls.TWILIO_ACCOUNT_SID,
            cls.TWILIO_AUTH_TOKEN,
            cls.TWILIO_CALLER_ID
        ])

    @classmethod
    def has_twilio_auth(cls) -> bool:
        """Check if Twilio REST auth is available (redirects, status lookups)."""
        return bool(cls.TWILIO_ACCOUNT_SID and cls.TWILIO_AUTH_TOKEN)


# Create a global config instance
config = Config()
