import os


class Settings:
    def __init__(self):
        self.app_name = "PracticeBook CRM"
        self.api_version = "1.0.0"
        self.environment = os.getenv("ENVIRONMENT", "development")
        self.secret_key = os.getenv("SECRET_KEY", "CHANGE_ME")
        self.SECRET_KEY = self.secret_key
        self.access_token_expire_minutes = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
        self.ACCESS_TOKEN_EXPIRE_MINUTES = self.access_token_expire_minutes
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./practicebook.db")
        self.database_timeout_seconds = float(os.getenv("DATABASE_TIMEOUT_SECONDS", "15"))
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_json = os.getenv("LOG_JSON", "false").lower() in ("1", "true", "yes")

        # Store calls are retried on transient failures only
        self.billing_retry_attempts = int(os.getenv("BILLING_RETRY_ATTEMPTS", "3"))
        self.billing_retry_base_delay = float(os.getenv("BILLING_RETRY_BASE_DELAY", "0.5"))
        self.billing_retry_max_delay = float(os.getenv("BILLING_RETRY_MAX_DELAY", "10"))
        self.billing_cas_attempts = int(os.getenv("BILLING_CAS_ATTEMPTS", "5"))


_settings_instance = None


def get_settings():
    """Return a singleton Settings instance."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance
