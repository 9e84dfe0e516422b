"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import Optional, List

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_EVENT_TITLE = "ACT Coaching Session"
DEFAULT_EVENT_DESCRIPTION = "Coaching session scheduled via ACT Coaching For Life"


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR") or None
    )

    # Google Calendar OAuth
    google_client_id: Optional[str] = Field(None, description="Google OAuth Client ID")
    google_client_secret: Optional[str] = Field(None, description="Google OAuth Client Secret")
    google_redirect_uri: str = Field(
        default="http://localhost:8080/calendar/callback",
        description="Google OAuth redirect URI"
    )
    google_scopes: List[str] = Field(
        default=[
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
        ],
        description="Google API scopes"
    )
    google_relax_token_scope: bool = Field(
        default=True,
        description=(
            "Accept a granted scope set wider than requested (Google adds openid and earlier grants); "
            "sets OAUTHLIB_RELAX_TOKEN_SCOPE when the OAuth flow is built"
        )
    )

    # Microsoft Graph (Outlook) OAuth
    microsoft_client_id: Optional[str] = Field(None, description="Microsoft application (client) ID")
    microsoft_client_secret: Optional[str] = Field(None, description="Microsoft client secret")
    microsoft_tenant: str = Field(default="common", description="Azure AD tenant for the authority URL")
    microsoft_redirect_uri: str = Field(
        default="http://localhost:8080/calendar/callback",
        description="Microsoft OAuth redirect URI"
    )
    microsoft_scopes: List[str] = Field(
        default=[
            "offline_access",
            "https://graph.microsoft.com/Calendars.ReadWrite",
            "https://graph.microsoft.com/User.Read",
        ],
        description="Microsoft Graph scopes"
    )

    # Application Configuration
    app_name: str = Field(default="coachsync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )
    frontend_url: str = Field(default="http://localhost:3000", description="Frontend base URL for redirects and links")
    api_token: Optional[str] = Field(default=None, description="Shared token required on management routes")

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".coachsync",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Sync queue
    sync_poll_seconds: int = Field(default=10, ge=1, description="Sleep between queue polls when idle")
    sync_max_attempts: int = Field(default=3, ge=1, description="Default attempts before a job is failed")
    sync_stale_job_minutes: int = Field(
        default=30, ge=1, description="Processing time after which a job is assumed abandoned by its worker"
    )
    default_event_title: str = Field(default=DEFAULT_EVENT_TITLE)
    default_event_description: str = Field(default=DEFAULT_EVENT_DESCRIPTION)

    # Reminders
    reminder_interval_minutes: int = Field(default=5, ge=1, description="Reminder sweep interval")
    maintenance_interval_hours: int = Field(default=24, ge=1, description="Cleanup sweep interval")
    reminder_retention_days: int = Field(default=30, ge=1, description="Age after which reminder rows are deleted")
    email_reminders_enabled: bool = Field(default=True)
    email_reminder_hours: List[int] = Field(default=[24, 2], description="Email lead times in hours")
    message_reminders_enabled: bool = Field(default=True)
    message_reminder_hours: List[int] = Field(default=[24, 1], description="In-app message lead times in hours")
    display_timezone: str = Field(default="America/New_York", description="Timezone used in reminder text")

    # Email (SMTP)
    smtp_host: Optional[str] = Field(default=None, description="SMTP server host; email reminders fail when unset")
    smtp_port: int = Field(default=587)
    smtp_username: Optional[str] = Field(default=None)
    smtp_password: Optional[str] = Field(default=None)
    smtp_use_tls: bool = Field(default=True)
    email_from: str = Field(default="noreply@actcoachingforlife.com")
    email_from_name: str = Field(default="ACT Coaching For Life")

    # Performance Configuration
    request_timeout_seconds: int = Field(
        default=30,
        ge=5,
        le=300,
        description="HTTP request timeout"
    )

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if v is None:
            return v
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url')
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/coachsync.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('email_reminder_hours', 'message_reminder_hours')
    def validate_lead_times(cls, v):
        """Lead times must be positive; keep them sorted, largest first."""
        if any(hours <= 0 for hours in v):
            raise ValueError("Reminder lead times must be positive hours")
        return sorted(set(v), reverse=True)

    @validator('frontend_url')
    def strip_trailing_slash(cls, v):
        return v.rstrip('/')

    def ensure_directories(self):
        """Create the data directory with owner-only permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def outlook_configured(self) -> bool:
        return bool(self.microsoft_client_id and self.microsoft_client_secret)

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of missing fields."""
        missing = []

        if not self.google_configured and not self.outlook_configured:
            missing.append('GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET or MICROSOFT_CLIENT_ID/MICROSOFT_CLIENT_SECRET')
        if self.email_reminders_enabled and not self.smtp_host:
            missing.append('SMTP_HOST (or set EMAIL_REMINDERS_ENABLED=false)')

        return missing


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style configuration file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# coachsync configuration
# Copy this file to .env and fill in your actual credentials

# Google Calendar OAuth
GOOGLE_CLIENT_ID=your_google_client_id_here
GOOGLE_CLIENT_SECRET=your_google_client_secret_here
GOOGLE_REDIRECT_URI=https://api.example.com/calendar/callback

# Microsoft Outlook OAuth (optional)
# MICROSOFT_CLIENT_ID=your_microsoft_client_id_here
# MICROSOFT_CLIENT_SECRET=your_microsoft_client_secret_here
# MICROSOFT_REDIRECT_URI=https://api.example.com/calendar/callback

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO
FRONTEND_URL=https://app.example.com
# API_TOKEN=shared_secret_for_management_routes

# Storage Configuration (optional)
# DATA_DIR=~/.coachsync
# DATABASE_URL=sqlite:///~/.coachsync/coachsync.db

# Sync queue
SYNC_POLL_SECONDS=10
SYNC_MAX_ATTEMPTS=3
SYNC_STALE_JOB_MINUTES=30

# Reminders
REMINDER_INTERVAL_MINUTES=5
EMAIL_REMINDERS_ENABLED=true
EMAIL_REMINDER_HOURS=[24, 2]
MESSAGE_REMINDERS_ENABLED=true
MESSAGE_REMINDER_HOURS=[24, 1]
DISPLAY_TIMEZONE=America/New_York

# Email (SMTP)
SMTP_HOST=smtp.example.com
SMTP_PORT=587
SMTP_USERNAME=your_smtp_user
SMTP_PASSWORD=your_smtp_password
EMAIL_FROM=noreply@example.com
'''

    with open(path, 'w') as f:
        f.write(example_content)
