"""Outbound delivery of login codes over email, SMS and a Telegram bot.

Every channel is fire-and-forget from the caller's point of view: failures are
logged and reported as ``False`` but never raised to the code issuer.
"""

from __future__ import annotations

import asyncio
import logging
import os
import smtplib
import threading
from email.message import EmailMessage
from typing import Any, Callable, Optional

import requests

from env_validation import get_env_bool, get_env_int

LOGGER = logging.getLogger("legal_trainer.delivery")

APP_TITLE = os.getenv("APP_TITLE", "Legal Trainer")


def mask_identity(value: str) -> str:
    """Hide most of an address for log lines."""
    text = str(value)
    if "@" in text:
        local, _, domain = text.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(text) <= 4:
        return "***"
    return f"{text[:2]}***{text[-2:]}"


class EmailChannel:
    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
        starttls: Optional[bool] = None,
        timeout: float = 10.0,
    ):
        self.host = host if host is not None else os.getenv("SMTP_HOST")
        self.port = port if port is not None else get_env_int("SMTP_PORT", 587)
        self.username = username if username is not None else os.getenv("SMTP_USER")
        self.password = password if password is not None else os.getenv("SMTP_PASSWORD")
        self.sender = sender or os.getenv("EMAIL_FROM") or self.username or "no-reply@localhost"
        self.starttls = starttls if starttls is not None else get_env_bool("SMTP_STARTTLS", True)
        self.timeout = timeout

    def send_email(self, to: str, subject: str, body: str) -> bool:
        if not self.host:
            LOGGER.warning("SMTP_HOST is not set; skipping email to %s", mask_identity(to))
            return False

        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(body, subtype="html")

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.starttls:
                    smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            LOGGER.error("Email sending error for %s: %s", mask_identity(to), exc, exc_info=True)
            return False
        LOGGER.info("Email sent to %s", mask_identity(to))
        return True


class SmsChannel:
    """SMS over the sms.ru HTTP API."""

    def __init__(
        self,
        api_id: Optional[str] = None,
        sender: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.api_id = api_id if api_id is not None else os.getenv("SMS_API_ID", "")
        self.sender = sender if sender is not None else os.getenv("SMS_FROM", "")
        self.api_url = api_url or os.getenv("SMS_API_URL", "https://sms.ru/sms/send")
        self.timeout = timeout

    def send_sms(self, to: str, message: str) -> bool:
        if not self.api_id:
            LOGGER.warning("SMS_API_ID is not set; skipping actual SMS send")
            return False
        params = {"api_id": self.api_id, "to": to, "msg": message, "json": 1}
        if self.sender:
            params["from"] = self.sender
        try:
            response = requests.get(self.api_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            LOGGER.error("SMS sending error for %s: %s", mask_identity(to), exc, exc_info=True)
            return False
        status = str(data.get("status", "")).upper() if isinstance(data, dict) else ""
        if status != "OK":
            LOGGER.warning("SMS provider rejected message to %s: %s", mask_identity(to), data)
            return False
        return True


class BotChannel:
    """Messages through the Telegram Bot API ``sendMessage`` method."""

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.token = token if token is not None else os.getenv("BOT_TOKEN", "")
        self.api_url = (api_url or os.getenv("BOT_API_URL", "https://api.telegram.org")).rstrip("/")
        self.timeout = timeout

    def send_bot_message(self, chat_id: str, text: str) -> bool:
        if not self.token:
            LOGGER.warning("BOT_TOKEN is not set; skipping bot message")
            return False
        url = f"{self.api_url}/bot{self.token}/sendMessage"
        payload = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            LOGGER.error("Bot message error for chat %s: %s", mask_identity(chat_id), exc, exc_info=True)
            return False
        if not response.ok:
            LOGGER.warning("Bot API error (%s): %s", response.status_code, response.text)
            return False
        return True


class DeliveryChannels:
    """Bundle of the three channels the code authenticator talks to."""

    def __init__(
        self,
        email: Optional[EmailChannel] = None,
        sms: Optional[SmsChannel] = None,
        bot: Optional[BotChannel] = None,
    ):
        self.email = email or EmailChannel()
        self.sms = sms or SmsChannel()
        self.bot = bot or BotChannel()

    def send_email(self, to: str, subject: str, body: str) -> bool:
        return self.email.send_email(to, subject, body)

    def send_sms(self, to: str, message: str) -> bool:
        return self.sms.send_sms(to, message)

    def send_bot_message(self, chat_id: str, text: str) -> bool:
        return self.bot.send_bot_message(chat_id, text)


def _run_quietly(send: Callable[..., Any], *args: Any) -> None:
    try:
        send(*args)
    except Exception:
        LOGGER.exception("Delivery through %s failed", getattr(send, "__name__", send))


async def _deliver_in_thread(send: Callable[..., Any], *args: Any) -> None:
    await asyncio.to_thread(_run_quietly, send, *args)


def schedule_delivery(send: Callable[..., Any], *args: Any) -> None:
    """Run ``send(*args)`` in the background without waiting for it."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        loop.create_task(_deliver_in_thread(send, *args))
    else:
        threading.Thread(target=_run_quietly, args=(send, *args), daemon=True).start()


def deliver_now(send: Callable[..., Any], *args: Any) -> None:
    """Synchronous dispatcher with the same failure handling as ``schedule_delivery``."""
    _run_quietly(send, *args)
