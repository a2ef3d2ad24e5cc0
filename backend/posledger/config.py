# backend/posledger/config.py
from __future__ import annotations
import os


class Config:
    # SQLite DB stored in backend/instance/posledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///posledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Ledger appends: bounded retry on CAS conflicts and store hiccups
    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "5"))
    LEDGER_RETRY_BACKOFF = float(os.environ.get("LEDGER_RETRY_BACKOFF", "0.05"))

    # Upper bound for a single store round-trip (SQLite busy timeout, pool checkout)
    LEDGER_STORE_TIMEOUT_SECONDS = float(os.environ.get("LEDGER_STORE_TIMEOUT_SECONDS", "10"))

    LEDGER_CURRENCY = os.environ.get("LEDGER_CURRENCY", "OMR")
