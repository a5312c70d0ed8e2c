from __future__ import annotations

import os


class Config:
    DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    RECONCILE_MAX_RETRIES = int(os.getenv("RECONCILE_MAX_RETRIES", "3"))
    CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "$")
