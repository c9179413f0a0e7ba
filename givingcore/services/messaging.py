"""Outbound transactional email through Brevo."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from givingcore.core.config import BaseAppSettings

logger = logging.getLogger(__name__)

BREVO_EMAIL_URL = "https://api.brevo.com/v3/smtp/email"


@dataclass(frozen=True)
class MessageResult:
    ok: bool
    message_id: str | None = None
    error: str | None = None


class Messenger(Protocol):
    def send_email(self, to: str, subject: str, body: str, tags: list[str] | None = None) -> MessageResult: ...


class BrevoMessenger:
    def __init__(
        self,
        api_key: str | None,
        sender_email: str | None,
        sender_name: str = "GivingCore Billing",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ):
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, settings: BaseAppSettings) -> BrevoMessenger:
        return cls(
            api_key=settings.BREVO_API_KEY,
            sender_email=settings.FROM_EMAIL,
            sender_name=settings.BREVO_SENDER_NAME,
            timeout=settings.PROVIDER_HTTP_TIMEOUT,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.sender_email)

    def send_email(self, to: str, subject: str, body: str, tags: list[str] | None = None) -> MessageResult:
        if not self.configured:
            logger.warning("Email not configured. Set BREVO_API_KEY and FROM_EMAIL")
            return MessageResult(ok=False, error="not_configured")
        payload = {
            "sender": {"name": self.sender_name, "email": self.sender_email},
            "to": [{"email": to}],
            "subject": subject,
            "textContent": body,
        }
        if tags:
            payload["tags"] = tags
        headers = {
            "accept": "application/json",
            "content-type": "application/json",
            "api-key": self.api_key,
        }
        try:
            if self._client is not None:
                response = self._client.post(BREVO_EMAIL_URL, json=payload, headers=headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(BREVO_EMAIL_URL, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Brevo email to %s failed: %s", to, e)
            return MessageResult(ok=False, error=str(e))
        logger.info("Brevo email sent to %s (messageId: %s)", to, data.get("messageId"))
        return MessageResult(ok=True, message_id=data.get("messageId"))
