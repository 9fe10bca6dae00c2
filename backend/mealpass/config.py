# backend/mealpass/config.py
from __future__ import annotations
import os


def _parse_weekdays(raw: str) -> tuple[int, ...]:
    # Python weekday numbers: Monday=0 ... Sunday=6
    days = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            days.append(int(part))
    return tuple(sorted(set(days)))


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/mealpass.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///mealpass.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Days auto-disabled when a partial_full_time range is first chosen
    WEEKEND_DAYS = _parse_weekdays(os.environ.get("WEEKEND_DAYS", "5,6"))
