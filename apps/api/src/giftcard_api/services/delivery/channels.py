"""SMS and email channel backends used by the delivery dispatcher."""

from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import List, Optional, Protocol
from uuid import uuid4

import httpx
from loguru import logger

from giftcard_api.core.errors import (
    DeliveryChannelError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from giftcard_api.core.settings import Settings, settings as default_settings


class SMSBackend(Protocol):
    """Sends one SMS and returns the provider message id."""

    provider: str

    async def send_sms(self, recipient: str, body_text: str) -> str | None:
        ...


class EmailBackend(Protocol):
    """Sends one email and returns the provider message id."""

    provider: str

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
    ) -> str | None:
        ...


class TwilioSMSBackend:
    """Twilio Programmable Messaging over its REST API."""

    provider = "twilio"

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_client = http_client

    async def send_sms(self, recipient: str, body_text: str) -> str | None:
        url = f"{self._base_url}/2010-04-01/Accounts/{self._account_sid}/Messages.json"
        data = {"To": recipient, "From": self._from_number, "Body": body_text}

        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._http_client is None
        try:
            response = await client.post(
                url,
                data=data,
                auth=(self._account_sid, self._auth_token),
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransientDeliveryError(f"Twilio request timed out: {exc}", provider=self.provider) from exc
        except httpx.HTTPError as exc:
            raise TransientDeliveryError(f"Twilio unreachable: {exc}", provider=self.provider) from exc
        finally:
            if owns_client:
                await client.aclose()

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(
                payload.get("message") or f"Twilio returned HTTP {response.status_code}",
                provider=self.provider,
                code=str(payload.get("code") or response.status_code),
            )
        if response.status_code >= 400:
            raise PermanentDeliveryError(
                payload.get("message") or f"Twilio rejected the message with HTTP {response.status_code}",
                provider=self.provider,
                code=str(payload.get("code") or response.status_code),
            )
        return payload.get("sid")


class InfobipSMSBackend:
    """Infobip SMS over the advanced text endpoint."""

    provider = "infobip"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.infobip.com",
        sender_id: str | None = None,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._sender_id = sender_id
        self._timeout = timeout
        self._http_client = http_client

    async def send_sms(self, recipient: str, body_text: str) -> str | None:
        message: dict[str, object] = {"destinations": [{"to": recipient.lstrip("+")}], "text": body_text}
        if self._sender_id:
            message["from"] = self._sender_id
        headers = {"Authorization": f"App {self._api_key}", "Accept": "application/json"}

        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._http_client is None
        try:
            response = await client.post(
                f"{self._base_url}/sms/2/text/advanced",
                json={"messages": [message]},
                headers=headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransientDeliveryError(f"Infobip request timed out: {exc}", provider=self.provider) from exc
        except httpx.HTTPError as exc:
            raise TransientDeliveryError(f"Infobip unreachable: {exc}", provider=self.provider) from exc
        finally:
            if owns_client:
                await client.aclose()

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code >= 400:
            service_error = (payload.get("requestError") or {}).get("serviceException") or {}
            text = service_error.get("text") or f"Infobip returned HTTP {response.status_code}"
            code = str(service_error.get("messageId") or response.status_code)
            error_cls = (
                TransientDeliveryError
                if response.status_code == 429 or response.status_code >= 500
                else PermanentDeliveryError
            )
            raise error_cls(text, provider=self.provider, code=code)

        messages = payload.get("messages") or [{}]
        result = messages[0] if isinstance(messages[0], dict) else {}
        status = result.get("status") or {}
        if status.get("groupName") in {"REJECTED", "UNDELIVERABLE"}:
            raise PermanentDeliveryError(
                status.get("description") or f"Infobip rejected the message ({status.get('name')})",
                provider=self.provider,
                code=str(status.get("id") or status.get("groupName")),
            )
        return result.get("messageId")


class FallbackSMSBackend:
    """Sends through a primary provider and retries once on a second provider when it fails.

    ``provider`` reflects whichever backend handled the most recent send.
    """

    def __init__(
        self,
        primary: SMSBackend,
        fallback: SMSBackend | None = None,
        *,
        fallback_on_error: bool = True,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._fallback_on_error = fallback_on_error
        self.provider = primary.provider
        self.fallback_used = False

    async def send_sms(self, recipient: str, body_text: str) -> str | None:
        try:
            message_id = await self._primary.send_sms(recipient, body_text)
        except DeliveryChannelError as primary_error:
            if self._fallback is None or not self._fallback_on_error:
                self.provider = self._primary.provider
                self.fallback_used = False
                raise
            logger.warning(
                "Primary SMS provider failed; trying fallback",
                primary=self._primary.provider,
                fallback=self._fallback.provider,
                error=str(primary_error),
            )
            try:
                message_id = await self._fallback.send_sms(recipient, body_text)
            except DeliveryChannelError as fallback_error:
                error_cls = (
                    TransientDeliveryError
                    if primary_error.transient or fallback_error.transient
                    else PermanentDeliveryError
                )
                raise error_cls(
                    f"Both SMS providers failed. {self._primary.provider}: {primary_error}. "
                    f"{self._fallback.provider}: {fallback_error}",
                    provider=self._fallback.provider,
                    code=fallback_error.code,
                ) from fallback_error
            self.provider = self._fallback.provider
            self.fallback_used = True
            return message_id

        self.provider = self._primary.provider
        self.fallback_used = False
        return message_id


class SMTPEmailBackend:
    """SMTP-powered backend that sends emails via the standard library."""

    provider = "smtp"

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        use_tls: bool,
        sender_email: str,
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._sender_email = sender_email
        self._timeout = timeout

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
    ) -> str | None:
        """Send email asynchronously by offloading the blocking call."""

        message = EmailMessage()
        message["From"] = self._sender_email
        message["To"] = recipient
        message["Subject"] = subject
        message["Message-ID"] = make_msgid()
        message.set_content(body_text)
        if body_html:
            message.add_alternative(body_html, subtype="html")

        await asyncio.to_thread(self._send, message)
        return message["Message-ID"]

    def _send(self, message: EmailMessage) -> None:
        try:
            smtp = smtplib.SMTP(self._host, self._port, timeout=self._timeout)
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientDeliveryError(f"SMTP connection failed: {exc}", provider=self.provider) from exc

        try:
            if self._use_tls:
                smtp.starttls()
            if self._username and self._password:
                smtp.login(self._username, self._password)
            smtp.send_message(message)
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentDeliveryError(f"Recipient refused: {exc.recipients}", provider=self.provider) from exc
        except smtplib.SMTPResponseException as exc:
            error_cls = PermanentDeliveryError if exc.smtp_code >= 500 else TransientDeliveryError
            raise error_cls(
                f"SMTP error {exc.smtp_code}: {exc.smtp_error!r}",
                provider=self.provider,
                code=str(exc.smtp_code),
            ) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientDeliveryError(f"SMTP delivery failed: {exc}", provider=self.provider) from exc
        finally:
            try:
                smtp.quit()
            except (smtplib.SMTPException, OSError):
                smtp.close()


@dataclass
class InMemorySMSBackend:
    """Stores SMS payloads for inspection in tests; queued errors are raised first."""

    sent_messages: List[tuple[str, str]]
    failures: List[DeliveryChannelError]
    provider: str = "memory-sms"

    def __init__(self, failures: List[DeliveryChannelError] | None = None) -> None:
        self.sent_messages = []
        self.failures = list(failures or [])
        self.provider = "memory-sms"
        self.calls = 0

    async def send_sms(self, recipient: str, body_text: str) -> str | None:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.sent_messages.append((recipient, body_text))
        return f"SM{uuid4().hex}"


@dataclass
class InMemoryEmailBackend:
    """Test backend storing outbound messages in memory; queued errors are raised first."""

    sent_messages: List[EmailMessage]
    failures: List[DeliveryChannelError]
    provider: str = "memory-email"

    def __init__(self, failures: List[DeliveryChannelError] | None = None) -> None:
        self.sent_messages = []
        self.failures = list(failures or [])
        self.provider = "memory-email"
        self.calls = 0

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
    ) -> str | None:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        message = EmailMessage()
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body_text)
        if body_html:
            message.add_alternative(body_html, subtype="html")
        self.sent_messages.append(message)
        return f"<{uuid4().hex}@memory>"


def build_sms_backend(
    config: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> SMSBackend | None:
    """Primary provider wrapped with the other one as fallback, whichever are configured."""

    config = config or default_settings
    backends: dict[str, SMSBackend] = {}
    if config.infobip_configured:
        backends["infobip"] = InfobipSMSBackend(
            api_key=config.infobip_api_key or "",
            base_url=config.infobip_base_url,
            sender_id=config.infobip_sender_id,
            timeout=config.infobip_timeout_seconds,
            http_client=http_client,
        )
    if config.twilio_configured:
        backends["twilio"] = TwilioSMSBackend(
            account_sid=config.twilio_account_sid or "",
            auth_token=config.twilio_auth_token or "",
            from_number=config.twilio_from_number or "",
            base_url=config.twilio_base_url,
            timeout=config.twilio_timeout_seconds,
            http_client=http_client,
        )

    primary_name = config.sms_primary_provider
    fallback_name = "twilio" if primary_name == "infobip" else "infobip"
    primary = backends.get(primary_name)
    fallback = backends.get(fallback_name) if config.sms_enable_fallback else None
    if primary is None:
        return fallback
    if fallback is None:
        return primary
    return FallbackSMSBackend(primary, fallback, fallback_on_error=config.sms_fallback_on_error)


def build_email_backend(config: Settings | None = None) -> EmailBackend | None:
    config = config or default_settings
    if not config.smtp_configured:
        return None
    return SMTPEmailBackend(
        host=config.smtp_host or "",
        port=config.smtp_port,
        username=config.smtp_username,
        password=config.smtp_password,
        use_tls=config.smtp_use_tls,
        sender_email=config.smtp_sender_email or "",
        timeout=config.smtp_timeout_seconds,
    )


__all__ = [
    "EmailBackend",
    "FallbackSMSBackend",
    "InMemoryEmailBackend",
    "InMemorySMSBackend",
    "InfobipSMSBackend",
    "SMSBackend",
    "SMTPEmailBackend",
    "TwilioSMSBackend",
    "build_email_backend",
    "build_sms_backend",
]
