from __future__ import annotations

import os
from decimal import Decimal


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./vikash_dispatch.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = _env_bool("LOG_JSON", True)

DEFAULT_TAX_RATE = Decimal(os.getenv("DEFAULT_TAX_RATE", "18"))

ORDER_NUMBER_PREFIX = os.getenv("ORDER_NUMBER_PREFIX", "PO")
DISPATCH_NUMBER_PREFIX = os.getenv("DISPATCH_NUMBER_PREFIX", "DO")
CONTINUATION_NUMBER_PREFIX = os.getenv("CONTINUATION_NUMBER_PREFIX", "DC")

# Synthetic actor recorded on cascaded approvals
AUTO_APPROVER = os.getenv("AUTO_APPROVER", "System (Auto-approval)")

# available >= max_level * watermark -> "high"
HIGH_STOCK_WATERMARK = Decimal(os.getenv("HIGH_STOCK_WATERMARK", "0.8"))
