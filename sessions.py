"""Bearer-token sessions and the authenticated context handed to handlers."""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

import db
from env_validation import get_env_int


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    token: str


class SessionRegistry:
    def __init__(
        self,
        ttl: Optional[timedelta] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ttl = ttl or timedelta(days=get_env_int("SESSION_TTL_DAYS", 7))
        self.clock = clock or db.utcnow
        self._tokens: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def issue(self, user_id: str) -> str:
        token = secrets.token_urlsafe(24)
        with self._lock:
            self._tokens[token] = (user_id, self.clock() + self.ttl)
        return token

    def resolve(self, token: Optional[str]) -> Optional[AuthContext]:
        if not token:
            return None
        with self._lock:
            record = self._tokens.get(token)
            if record is None:
                return None
            user_id, expires_at = record
            if self.clock() > expires_at:
                del self._tokens[token]
                return None
        return AuthContext(user_id=user_id, token=token)

    def revoke(self, token: str) -> bool:
        with self._lock:
            return self._tokens.pop(token, None) is not None


def extract_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    candidate = header_value.strip()
    if not candidate:
        return None
    if " " in candidate:
        prefix, token = candidate.split(" ", 1)
        if prefix.lower() in {"bearer", "token"}:
            candidate = token.strip()
        else:
            candidate = token.strip() or prefix.strip()
    return candidate or None
