import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


class Settings:
    """Environment-backed settings, read at call time."""

    def __init__(self):
        self.database_url = os.getenv("DATABASE_URL")
        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")
        self.stripe_timeout_seconds = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))
        self.webhook_tolerance_seconds = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))
        self.jwt_secret = os.getenv("JWT_SECRET")
        self.aws_region = os.getenv("AWS_REGION", "eu-west-1")
        self.ses_from_email = os.getenv("SES_FROM_EMAIL", "orders@localhost")
        self.admin_email = os.getenv("ADMIN_EMAIL")
        self.shop_url = os.getenv("SHOP_URL", "http://localhost:3000")
        self.abandon_after_hours = int(os.getenv("ABANDON_AFTER_HOURS", "24"))
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()


def get_settings() -> Settings:
    return Settings()
