# campaign_engine/config/settings.py - Campaign automation engine configuration
from pydantic_settings import BaseSettings
from typing import List
import json
import os
from dotenv import load_dotenv

# Load .env file before anything else
load_dotenv(override=True)


class Settings(BaseSettings):
    # App Config
    app_name: str = "Campaign Automation Engine"
    version: str = "1.0.0"
    debug: bool = True

    # Security
    secret_key: str = "your-secret-key-here"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # MongoDB Configuration
    mongodb_url: str = "mongodb://localhost:27017"
    database_name: str = "campaign_engine"

    # MongoDB Connection Options
    mongodb_max_pool_size: int = 10
    mongodb_min_pool_size: int = 1
    mongodb_max_idle_time_ms: int = 30000
    mongodb_server_selection_timeout_ms: int = 5000
    mongodb_connect_timeout_ms: int = 10000
    mongodb_socket_timeout_ms: int = 10000

    # Brevo transactional email
    brevo_api_url: str = "https://api.brevo.com/v3"
    brevo_api_key: str = ""
    brevo_sender_email: str = "noreply@example.com"
    brevo_sender_name: str = "Campaigns"

    # WhatsApp Cloud API
    whatsapp_api_url: str = "https://graph.facebook.com"
    whatsapp_api_version: str = "v21.0"
    whatsapp_phone_number_id: str = ""
    whatsapp_access_token: str = ""

    # Campaign engine
    campaign_cron_enabled: bool = True
    campaign_sweep_interval_seconds: int = 60
    campaign_sweep_batch_size: int = 50
    campaign_sweep_concurrency: int = 10
    campaign_block_timeout_seconds: float = 30.0
    campaign_condition_poll_minutes: int = 15
    campaign_stale_execution_minutes: int = 10

    # Logging Configuration
    log_level: str = "INFO"

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"

    def get_allowed_origins(self) -> List[str]:
        """Get allowed origins from env or default"""
        origins_str = os.getenv("ALLOWED_ORIGINS", '["http://localhost:3000", "http://127.0.0.1:3000"]')
        try:
            return json.loads(origins_str)
        except ValueError:
            return [origin.strip() for origin in origins_str.split(",")]

    def get_mongodb_connection_options(self) -> dict:
        """Get MongoDB connection options"""
        return {
            "maxPoolSize": self.mongodb_max_pool_size,
            "minPoolSize": self.mongodb_min_pool_size,
            "maxIdleTimeMS": self.mongodb_max_idle_time_ms,
            "serverSelectionTimeoutMS": self.mongodb_server_selection_timeout_ms,
            "connectTimeoutMS": self.mongodb_connect_timeout_ms,
            "socketTimeoutMS": self.mongodb_socket_timeout_ms,
            "retryWrites": True,
        }

    def is_brevo_configured(self) -> bool:
        """Check if Brevo email is properly configured"""
        return bool(self.brevo_api_key) and bool(self.brevo_sender_email)

    def is_whatsapp_configured(self) -> bool:
        """Check if the WhatsApp Cloud API is properly configured"""
        return bool(self.whatsapp_phone_number_id) and bool(self.whatsapp_access_token)

    def get_whatsapp_config(self) -> dict:
        """Get WhatsApp configuration dictionary"""
        return {
            "base_url": f"{self.whatsapp_api_url.rstrip('/')}/{self.whatsapp_api_version}",
            "phone_number_id": self.whatsapp_phone_number_id,
            "access_token": self.whatsapp_access_token,
        }

    def get_campaign_engine_config(self) -> dict:
        """Get sweep configuration dictionary"""
        return {
            "interval_seconds": self.campaign_sweep_interval_seconds,
            "batch_size": self.campaign_sweep_batch_size,
            "concurrency": self.campaign_sweep_concurrency,
            "block_timeout_seconds": self.campaign_block_timeout_seconds,
            "condition_poll_minutes": self.campaign_condition_poll_minutes,
            "stale_execution_minutes": self.campaign_stale_execution_minutes,
        }


# Global settings instance
settings = Settings()
