# backend/posledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/posledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///posledger.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Non-elevated roles may only void within this many hours of the sale
    VOID_WINDOW_HOURS = int(os.environ.get("VOID_WINDOW_HOURS", "24"))

    # One loyalty point per this much spent; SystemSetting customer/points_conversion_rate wins
    POINTS_CONVERSION_RATE = int(os.environ.get("POINTS_CONVERSION_RATE", "10000"))

    # Row-lock wait before a write gives up with a retryable error
    LOCK_TIMEOUT_SECONDS = float(os.environ.get("LOCK_TIMEOUT_SECONDS", "5"))
    LOCK_RETRY_ATTEMPTS = int(os.environ.get("LOCK_RETRY_ATTEMPTS", "3"))
    LOCK_RETRY_BACKOFF = float(os.environ.get("LOCK_RETRY_BACKOFF", "0.1"))
