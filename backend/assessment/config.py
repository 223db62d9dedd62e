"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    DATABASE_URL: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    LOG_LEVEL: str
    DAILY_TRACK_DAYS: int
    DAILY_UNLOCK_PERCENTAGE: float
    MCQ_PASS_PERCENTAGE: float
    MCQ_DEFAULT_QUESTION_COUNT: int
    GRANDTEST_QUESTION_COUNT: int
    GRANDTEST_TIME_LIMIT_MINUTES: int
    GRANDTEST_PASS_PERCENTAGE: float
    GRANDTEST_COOLDOWN_HOURS: int

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'assessment.db'}")
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.DAILY_TRACK_DAYS = int(os.getenv("DAILY_TRACK_DAYS", "45"))
        # unlock bar for the next day, separate from a config's own passing score
        self.DAILY_UNLOCK_PERCENTAGE = float(os.getenv("DAILY_UNLOCK_PERCENTAGE", "90"))
        self.MCQ_PASS_PERCENTAGE = float(os.getenv("MCQ_PASS_PERCENTAGE", "70"))
        self.MCQ_DEFAULT_QUESTION_COUNT = int(os.getenv("MCQ_DEFAULT_QUESTION_COUNT", "25"))
        self.GRANDTEST_QUESTION_COUNT = int(os.getenv("GRANDTEST_QUESTION_COUNT", "5"))
        self.GRANDTEST_TIME_LIMIT_MINUTES = int(os.getenv("GRANDTEST_TIME_LIMIT_MINUTES", "5"))
        self.GRANDTEST_PASS_PERCENTAGE = float(os.getenv("GRANDTEST_PASS_PERCENTAGE", "90"))
        self.GRANDTEST_COOLDOWN_HOURS = int(os.getenv("GRANDTEST_COOLDOWN_HOURS", "24"))
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        for name in ("DAILY_UNLOCK_PERCENTAGE", "MCQ_PASS_PERCENTAGE", "GRANDTEST_PASS_PERCENTAGE"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise RuntimeError(f"{name} must be between 0 and 100, got {value}")
        for name in ("DAILY_TRACK_DAYS", "MCQ_DEFAULT_QUESTION_COUNT", "GRANDTEST_QUESTION_COUNT",
                     "GRANDTEST_TIME_LIMIT_MINUTES"):
            if getattr(self, name) <= 0:
                raise RuntimeError(f"{name} must be positive")
        if self.GRANDTEST_COOLDOWN_HOURS < 0:
            raise RuntimeError("GRANDTEST_COOLDOWN_HOURS must be >= 0")


settings = Settings()
