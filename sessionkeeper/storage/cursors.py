from __future__ import annotations

import base64
import binascii
from datetime import datetime, timezone
from typing import NamedTuple


class SessionCursor(NamedTuple):
    """Keyset position in a session listing ordered by ``(issued_at, id)`` descending.

    Clients only ever see the opaque ``encode()`` form.
    """

    issued_at: datetime
    token_id: str

    def encode(self) -> str:
        ts = self.issued_at if self.issued_at.tzinfo else self.issued_at.replace(tzinfo=timezone.utc)
        raw = f"{ts.isoformat()}|{self.token_id}".encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    @classmethod
    def decode(cls, cursor: str) -> "SessionCursor":
        padded = cursor + "=" * (-len(cursor) % 4)
        try:
            raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
            stamp, _, token_id = raw.partition("|")
            issued_at = datetime.fromisoformat(stamp)
        except (binascii.Error, UnicodeError, ValueError) as exc:
            raise ValueError("invalid session cursor") from exc
        if not token_id:
            raise ValueError("invalid session cursor")
        if issued_at.tzinfo is None:
            issued_at = issued_at.replace(tzinfo=timezone.utc)
        return cls(issued_at, token_id)

    def precedes(self, issued_at: datetime, token_id: str) -> bool:
        """True when a row at ``(issued_at, token_id)`` belongs on a later page."""
        if issued_at != self.issued_at:
            return issued_at < self.issued_at
        return token_id < self.token_id
