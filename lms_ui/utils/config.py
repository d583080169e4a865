"""
Configuration management for LMS UI
"""
import os
from typing import Any, Dict, List

AUTH_PROVIDERS = ("cognito", "dev")

def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"

class Config:
    """Application configuration"""

    # AWS Configuration
    AWS_REGION = os.getenv("COGNITO_REGION", os.getenv("AWS_REGION", "ap-southeast-1"))

    # Cognito Configuration (from the LMS core stack)
    COGNITO_USER_POOL_ID = os.getenv("COGNITO_USER_POOL_ID")  # Required - no default
    COGNITO_CLIENT_ID = os.getenv("COGNITO_CLIENT_ID")  # Required - no default
    COGNITO_CLIENT_SECRET = os.getenv("COGNITO_CLIENT_SECRET")  # Optional - public app clients have none

    # LMS REST backend (API Gateway)
    API_BASE_URL = os.getenv("API_BASE_URL")  # Required - no default
    API_TIMEOUT = float(os.getenv("API_TIMEOUT", "10"))

    # Identity provider selection: "cognito" or "dev"
    AUTH_PROVIDER = os.getenv("AUTH_PROVIDER", "cognito").lower()

    # Session persistence
    SESSION_STORE_DIR = os.getenv("SESSION_STORE_DIR", ".sessions")
    SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "lms_session")
    SESSION_COOKIE_MAX_AGE = int(os.getenv("SESSION_COOKIE_MAX_AGE", str(30 * 24 * 3600)))
    SESSION_RESTORE_TIMEOUT = float(os.getenv("SESSION_RESTORE_TIMEOUT", "10"))
    # Managers without a live session are dropped after this many idle seconds
    SESSION_IDLE_TIMEOUT = float(os.getenv("SESSION_IDLE_TIMEOUT", str(15 * 60)))
    SESSION_CLEANUP_INTERVAL = int(os.getenv("SESSION_CLEANUP_INTERVAL", "100"))
    # Trusting the persisted snapshot skips live verification on restore.
    TRUST_PERSISTED_SESSION = _env_bool("TRUST_PERSISTED_SESSION", "false")

    def missing_settings(self) -> List[str]:
        """Names of required settings that are not set"""
        required = {"API_BASE_URL": self.API_BASE_URL}
        if self.AUTH_PROVIDER == "cognito":
            required["COGNITO_USER_POOL_ID"] = self.COGNITO_USER_POOL_ID
            required["COGNITO_CLIENT_ID"] = self.COGNITO_CLIENT_ID
        return [name for name, value in required.items() if not value]

    def validate_required_config(self):
        """Raise ValueError when the identity provider or API settings are incomplete"""
        if self.AUTH_PROVIDER not in AUTH_PROVIDERS:
            raise ValueError(
                f"AUTH_PROVIDER must be one of {', '.join(AUTH_PROVIDERS)}, got '{self.AUTH_PROVIDER}'"
            )

        missing = self.missing_settings()
        if missing:
            raise ValueError(
                f"Missing required settings: {', '.join(missing)}. "
                "Set them in the environment or .env, or start with 'python run_dev.py' "
                "to read them from the LMS stack outputs."
            )
        return True

    # Application Configuration
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")
    DEBUG = _env_bool("DEBUG", "True")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    @property
    def COGNITO_ENDPOINT(self) -> str:
        """Cognito user pool API endpoint for the configured region"""
        return f"https://cognito-idp.{self.AWS_REGION}.amazonaws.com/"

    def get_cognito_config(self) -> Dict[str, Any]:
        """Get Cognito configuration for authentication"""
        return {
            "region": self.AWS_REGION,
            "user_pool_id": self.COGNITO_USER_POOL_ID,
            "client_id": self.COGNITO_CLIENT_ID,
            "client_secret": self.COGNITO_CLIENT_SECRET,
            "endpoint": self.COGNITO_ENDPOINT,
        }

class DevelopmentConfig(Config):
    """Development environment configuration"""
    DEBUG = True

class ProductionConfig(Config):
    """Production environment configuration"""
    DEBUG = False
    SECRET_KEY = os.getenv("SECRET_KEY")  # Must be set in production

def get_config() -> Config:
    """Get configuration based on environment"""
    env = os.getenv("ENVIRONMENT", "development").lower()

    if env == "production":
        config = ProductionConfig()
    else:
        config = DevelopmentConfig()

    try:
        config.validate_required_config()
    except ValueError:
        # Development servers may start half-configured (dev provider, tests)
        if env != "development":
            raise

    return config
