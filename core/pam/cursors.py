"""
Opaque keyset cursors for restartable pagination.

A cursor is the sort key of the last row returned, JSON-encoded and
base64url-wrapped. Clients hand it back verbatim to continue; rows inserted
after the cursor was issued appear on later pages, nothing is skipped or
repeated.
"""
from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from core.pam.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from core.pam.errors import PamInvalidArgument


@dataclass(frozen=True)
class Page:
    items: list
    next_cursor: str | None

    def to_dict(self, key: str) -> dict:
        return {
            key: [item.to_dict() for item in self.items],
            'count': len(self.items),
            'next_cursor': self.next_cursor,
        }


def encode_cursor(*values: Any) -> str:
    payload = [v.isoformat() if isinstance(v, datetime) else v for v in values]
    raw = json.dumps(payload, separators=(',', ':')).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip('=')


def decode_cursor(cursor: str, arity: int) -> list:
    """Decode a cursor into its key values; the first one is a datetime.

    Raises:
        PamInvalidArgument: The cursor is malformed.
    """
    try:
        padded = cursor + '=' * (-len(cursor) % 4)
        values = json.loads(base64.urlsafe_b64decode(padded.encode()))
        if not isinstance(values, list) or len(values) != arity:
            raise ValueError('wrong arity')
        values[0] = datetime.fromisoformat(values[0])
        for value in values[1:]:
            if isinstance(value, bool) or not isinstance(value, (str, int)):
                raise ValueError('cursor key must be a string or integer')
    except (binascii.Error, ValueError, TypeError) as e:
        raise PamInvalidArgument('Invalid pagination cursor') from e
    return values


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_PAGE_SIZE
    return min(max(int(limit), 1), MAX_PAGE_SIZE)
