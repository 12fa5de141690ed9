"""Short-lived numeric login codes delivered by email, SMS or bot.

A code moves through ``issued -> consumed | expired | invalid``. Codes live in
a :class:`CodeRegistry` owned by the application; verification looks up,
checks and removes an entry in a single locked step, so a code can be
exchanged for a user at most once.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

import db
from delivery import APP_TITLE, DeliveryChannels, mask_identity, schedule_delivery
from env_validation import get_env_int
from errors import CodeExpired, InvalidCode, InvalidInput

LOGGER = logging.getLogger("legal_trainer.auth")

CODE_MIN = 100000
CODE_MAX = 999999
DEFAULT_CODE_TTL = timedelta(minutes=5)
MAX_ISSUE_ATTEMPTS = 20

_CHANNEL_KINDS = ("email", "phone", "bot")


class VerifyOutcome(str, Enum):
    CONSUMED = "consumed"
    EXPIRED = "expired"
    MISSING = "missing"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class ChannelIdentity:
    kind: str
    value: str

    def __post_init__(self):
        if self.kind not in _CHANNEL_KINDS:
            raise InvalidInput(f"Unknown channel: {self.kind}", {"channel": self.kind})
        if not str(self.value or "").strip():
            raise InvalidInput(f"{self.kind} is required", {"channel": self.kind})

    @classmethod
    def email(cls, address: str) -> "ChannelIdentity":
        return cls("email", (address or "").strip().lower())

    @classmethod
    def phone(cls, number: str) -> "ChannelIdentity":
        return cls("phone", (number or "").strip())

    @classmethod
    def bot(cls, chat_id: Any) -> "ChannelIdentity":
        return cls("bot", str(chat_id if chat_id is not None else "").strip())

    def display_name(self) -> str:
        if self.kind == "email":
            return self.value.split("@", 1)[0]
        return self.value


@dataclass(frozen=True)
class AuthCode:
    code: str
    identity: ChannelIdentity
    expires_at: datetime


class CodeRegistry:
    """In-process store of live codes with atomic bind and take."""

    def __init__(self):
        self._entries: Dict[str, AuthCode] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, code: str) -> bool:
        with self._lock:
            return code in self._entries

    def bind(self, entry: AuthCode, now: datetime) -> bool:
        """Store ``entry`` unless a live entry already holds the same code."""
        with self._lock:
            current = self._entries.get(entry.code)
            if current is not None and now <= current.expires_at:
                return False
            self._entries[entry.code] = entry
            return True

    def take(
        self,
        code: str,
        now: datetime,
        expected: Optional[ChannelIdentity] = None,
        kind: Optional[str] = None,
    ) -> tuple[VerifyOutcome, Optional[AuthCode]]:
        """Look up, check and remove ``code`` in one step.

        A channel or identity mismatch leaves the entry in place; expiry and
        success remove it.
        """
        with self._lock:
            entry = self._entries.get(code)
            if entry is None:
                return VerifyOutcome.MISSING, None
            if kind is not None and entry.identity.kind != kind:
                return VerifyOutcome.MISMATCH, entry
            if expected is not None and entry.identity != expected:
                return VerifyOutcome.MISMATCH, entry
            del self._entries[code]
            if now > entry.expires_at:
                return VerifyOutcome.EXPIRED, entry
            return VerifyOutcome.CONSUMED, entry

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            stale = [code for code, entry in self._entries.items() if now > entry.expires_at]
            for code in stale:
                del self._entries[code]
        return len(stale)


def _email_body(code: str, ttl_minutes: int) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<h2 style="text-align: center;">{APP_TITLE} login code</h2>'
        "<p>Use this code to sign in:</p>"
        '<div style="background: #f8f9fa; padding: 20px; text-align: center; border-radius: 8px;">'
        f'<h1 style="font-size: 32px; margin: 0; letter-spacing: 4px;">{code}</h1>'
        "</div>"
        f"<p>The code is valid for {ttl_minutes} minutes.</p>"
        "<p>If you did not request it, ignore this message.</p>"
        "</div>"
    )


class OneTimeCodeAuthenticator:
    """Issue and verify login codes and resolve them to users.

    ``store`` defaults to the :mod:`db` module and needs
    ``find_user_by_identity(kind, value)`` and ``create_user(**fields)``.
    ``dispatch`` runs a delivery callable; it defaults to background delivery.
    """

    def __init__(
        self,
        registry: CodeRegistry,
        channels: DeliveryChannels,
        store: Any = None,
        *,
        ttl: Optional[timedelta] = None,
        clock: Optional[Callable[[], datetime]] = None,
        dispatch: Callable[..., None] = schedule_delivery,
        code_factory: Optional[Callable[[], str]] = None,
    ):
        self.registry = registry
        self.channels = channels
        self.store = store or db
        if ttl is None:
            ttl = timedelta(seconds=get_env_int("AUTH_CODE_TTL_SECONDS", int(DEFAULT_CODE_TTL.total_seconds())))
        self.ttl = ttl
        self.clock = clock or db.utcnow
        self.dispatch = dispatch
        self.code_factory = code_factory or generate_code

    def issue_code(self, identity: ChannelIdentity) -> AuthCode:
        now = self.clock()
        purged = self.registry.purge_expired(now)
        if purged:
            LOGGER.debug("Purged %s expired login codes", purged)
        entry = None
        for _ in range(MAX_ISSUE_ATTEMPTS):
            candidate = AuthCode(self.code_factory(), identity, now + self.ttl)
            if self.registry.bind(candidate, now):
                entry = candidate
                break
        if entry is None:
            raise RuntimeError("could not allocate a free login code")

        LOGGER.info("Issued %s login code for %s", identity.kind, mask_identity(identity.value))
        self._deliver(entry)
        return entry

    def _deliver(self, entry: AuthCode) -> None:
        identity = entry.identity
        if identity.kind == "email":
            ttl_minutes = max(1, int(self.ttl.total_seconds() // 60))
            self.dispatch(
                self.channels.send_email,
                identity.value,
                f"Login code - {APP_TITLE}",
                _email_body(entry.code, ttl_minutes),
            )
        elif identity.kind == "phone":
            self.dispatch(self.channels.send_sms, identity.value, f"Login code: {entry.code}")
        else:
            self.dispatch(
                self.channels.send_bot_message,
                identity.value,
                f"Your {APP_TITLE} login code: <b>{entry.code}</b>",
            )

    def verify_code(
        self,
        code: str,
        expected: Optional[ChannelIdentity] = None,
        *,
        kind: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Exchange ``code`` for a user.

        ``expected`` pins the exact identity (SMS flow); ``kind`` pins only the
        channel, so a code sent to a phone cannot be redeemed as an email code.
        """
        code = (code or "").strip()
        if not code:
            raise InvalidInput("Code is required", {"field": "code"})

        if expected is not None:
            kind = kind or expected.kind
        outcome, entry = self.registry.take(code, self.clock(), expected, kind)
        if outcome is VerifyOutcome.MISSING:
            raise InvalidCode()
        if outcome is VerifyOutcome.MISMATCH:
            # The entry stays usable by its rightful owner.
            LOGGER.warning(
                "Login code presented through the %s flow but bound to a %s identity",
                kind, entry.identity.kind,
            )
            raise InvalidCode()
        if outcome is VerifyOutcome.EXPIRED:
            raise CodeExpired()

        return self._resolve_user(entry.identity)

    def _resolve_user(self, identity: ChannelIdentity) -> Dict[str, Any]:
        user = self.store.find_user_by_identity(identity.kind, identity.value)
        if user is not None:
            return user

        fields = {"name": identity.display_name()}
        fields["bot_chat_id" if identity.kind == "bot" else identity.kind] = identity.value
        try:
            user = self.store.create_user(**fields)
        except InvalidInput:
            # Another request created the same identity first.
            user = self.store.find_user_by_identity(identity.kind, identity.value)
            if user is None:
                raise
        LOGGER.info("Created user for %s login", identity.kind)
        return user


def generate_code() -> str:
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))
