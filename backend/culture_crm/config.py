# backend/culture_crm/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/culture_crm.sqlite3 unless DATABASE_URL points at Postgres
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///culture_crm.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Attempts for run_with_retry on deadlocks / optimistic lock conflicts
    DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))

    # Client auto-deactivation (flask clients deactivate-inactive)
    CLIENT_INACTIVITY_MONTHS = int(os.environ.get("CLIENT_INACTIVITY_MONTHS", "6"))
    CLIENT_DEACTIVATION_BATCH_SIZE = int(os.environ.get("CLIENT_DEACTIVATION_BATCH_SIZE", "100"))
