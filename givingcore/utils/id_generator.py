from __future__ import annotations

import datetime as dt
import secrets


def generate_receipt_number(prefix: str = "GC", now: dt.datetime | None = None) -> str:
    """``GC-YYYYMMDD-XXXX`` with a random hex suffix."""
    stamp = (now or dt.datetime.now(dt.timezone.utc)).strftime("%Y%m%d")
    return f"{prefix}-{stamp}-{secrets.token_hex(2)}".upper()
