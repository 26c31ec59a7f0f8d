# backend/posledger/config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///posledger.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Pricing / shop identity (threaded into the order service via OrderSettings)
    TAX_RATE_BPS = _env_int("TAX_RATE_BPS", 0)
    SHOP_NAME = os.environ.get("SHOP_NAME", "POS Ledger Store")

    # Online order payment windows
    ONLINE_CASH_HOLD_HOURS = _env_int("ONLINE_CASH_HOLD_HOURS", 4)
    ONLINE_TRANSFER_HOLD_HOURS = _env_int("ONLINE_TRANSFER_HOLD_HOURS", 24)
    MAX_PENDING_ONLINE_PER_PHONE = _env_int("MAX_PENDING_ONLINE_PER_PHONE", 3)

    # Stock write discipline
    STOCK_RETRY_ATTEMPTS = _env_int("STOCK_RETRY_ATTEMPTS", 3)
    STOCK_RETRY_BACKOFF_MS = _env_int("STOCK_RETRY_BACKOFF_MS", 100)
    STOCK_LOCK_TIMEOUT_MS = _env_int("STOCK_LOCK_TIMEOUT_MS", 5000)

    # Stock listing flags
    NEAR_EXPIRY_DAYS = _env_int("NEAR_EXPIRY_DAYS", 30)


@dataclass(frozen=True)
class OrderSettings:
    """
    Explicit configuration for order pricing and lifecycle.

    Built once per request from the app config and handed to the order
    service; nothing in the ledger/allocation core reads app globals.
    """
    tax_rate_bps: int = 0
    shop_name: str = "POS Ledger Store"
    online_cash_hold_hours: int = 4
    online_transfer_hold_hours: int = 24
    max_pending_online_per_phone: int = 3

    @classmethod
    def from_config(cls, config: Mapping) -> "OrderSettings":
        return cls(
            tax_rate_bps=int(config.get("TAX_RATE_BPS", 0)),
            shop_name=str(config.get("SHOP_NAME", cls.shop_name)),
            online_cash_hold_hours=int(config.get("ONLINE_CASH_HOLD_HOURS", 4)),
            online_transfer_hold_hours=int(config.get("ONLINE_TRANSFER_HOLD_HOURS", 24)),
            max_pending_online_per_phone=int(config.get("MAX_PENDING_ONLINE_PER_PHONE", 3)),
        )
