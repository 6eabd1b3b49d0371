"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    JWT_SECRET: str
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    DATABASE_URL: str
    STATE_DIR: str
    STRIPE_SECRET_KEY: str
    STRIPE_WEBHOOK_SECRET: str
    FREE_DAILY_QUESTION_LIMIT: int
    CHECKOUT_RATE_LIMIT_PER_MIN: int
    LOG_LEVEL: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'certano.db'}")
        # local gamification state (one directory per user)
        self.STATE_DIR = os.getenv("STATE_DIR", str(BASE / "data" / "state"))
        self.STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
        self.STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
        self.FREE_DAILY_QUESTION_LIMIT = int(os.getenv("FREE_DAILY_QUESTION_LIMIT", "5"))
        self.CHECKOUT_RATE_LIMIT_PER_MIN = int(os.getenv("CHECKOUT_RATE_LIMIT_PER_MIN", "20"))
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.ENV != "dev" and not self.STRIPE_WEBHOOK_SECRET:
            raise RuntimeError("STRIPE_WEBHOOK_SECRET must be set in non-dev environments")
        if self.FREE_DAILY_QUESTION_LIMIT < 0:
            raise RuntimeError("FREE_DAILY_QUESTION_LIMIT must be >= 0")


settings = Settings()
