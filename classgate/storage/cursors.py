from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Tuple


def encode_time_id_cursor(created_at: datetime, identifier: str) -> str:
    """Encode a cursor combining a timestamp and identifier for keyset paging."""

    ts = created_at if created_at.tzinfo else created_at.replace(tzinfo=timezone.utc)
    raw = f"{ts.isoformat()}|{identifier}"
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def decode_time_id_cursor(cursor: str) -> Tuple[datetime, str]:
    """Decode a time/id cursor into timestamp and identifier.

    Raises ValueError for anything that was not produced by the encoder.
    """

    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError("invalid activity cursor") from exc
    parts = raw.split("|", 1)
    if len(parts) != 2 or not parts[1]:
        raise ValueError("invalid activity cursor")
    ts = datetime.fromisoformat(parts[0])
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts, parts[1]
