from __future__ import annotations

import asyncio
import smtplib
import ssl
import uuid
from dataclasses import dataclass
from email.mime.text import MIMEText
from email.utils import make_msgid
from enum import Enum
from typing import Dict, Optional, Protocol

import httpx

from loginguard.logging import get_logger, mask_address
from loginguard.service.errors import ServerError, UnsupportedChannelError

logger = get_logger(__name__)


class MessagingType(str, Enum):
    SMS = "SMS"
    EMAIL = "EMAIL"
    WHATSAPP = "WHATSAPP"
    PUSH_NOTIFICATION = "PUSH_NOTIFICATION"

    @classmethod
    def parse(cls, value: "str | MessagingType | None") -> "MessagingType":
        """Case-insensitive lookup; unknown names are a client error."""
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "").strip().upper())
        except ValueError:
            raise UnsupportedChannelError(
                "messaging channel not supported",
                detail={"field": "channel", "value": value},
            ) from None


@dataclass
class Message:
    recipient: str
    subject: str
    body: str


_TEMPLATES: Dict[str, Dict[str, str]] = {
    "en": {
        "verification_subject": "Verification code",
        "verification_message": "Your verification code is {code}",
    },
    "fr": {
        "verification_subject": "Code de vérification",
        "verification_message": "Votre code de vérification est {code}",
    },
}


def _resolve_locale(locale: Optional[str], default: str = "en") -> str:
    for candidate in (locale, default):
        if not candidate:
            continue
        # "fr-CA" and "fr_CA" fall back to "fr"
        language = candidate.replace("_", "-").split("-", 1)[0].lower()
        if language in _TEMPLATES:
            return language
    return "en"


def render_verification(
    code: str, locale: Optional[str] = None, *, default_locale: str = "en"
) -> tuple[str, str]:
    """Return the localized (subject, body) pair for a verification code."""
    templates = _TEMPLATES[_resolve_locale(locale, default_locale)]
    return templates["verification_subject"], templates["verification_message"].format(code=code)


class MessagingService(Protocol):
    async def send(self, message: Message) -> Optional[str]:
        ...


class LoggingMessagingService:
    """Dev fallback that records the message in the log instead of delivering it."""

    def __init__(self, channel: MessagingType) -> None:
        self.channel = channel

    async def send(self, message: Message) -> Optional[str]:
        delivery_id = f"log-{uuid.uuid4().hex}"
        logger.info(
            "message_dev_mode",
            channel=self.channel.value,
            to=mask_address(message.recipient),
            subject=message.subject,
            delivery_id=delivery_id,
        )
        return delivery_id


class EmailMessagingService:
    """SMTP delivery with STARTTLS or implicit TLS.

    Falls back to logging when no SMTP host or sender is configured.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "LoginGuard",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    async def send(self, message: Message) -> Optional[str]:
        return await asyncio.to_thread(self._send_email, message)

    def _send_email(self, message: Message) -> Optional[str]:
        to_email = message.recipient
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=mask_address(to_email),
                subject=message.subject,
            )
            return None

        msg = MIMEText(message.body, "plain", "utf-8")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        message_id = make_msgid()
        msg["Message-ID"] = message_id

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            raise ServerError("message delivery failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=mask_address(to_email), error=str(e))
            raise ServerError("message delivery failed") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_address(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ServerError("message delivery failed") from e
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ServerError("message delivery failed") from e

        logger.info("email_sent", to=mask_address(to_email), subject=message.subject)
        return message_id


class HttpGatewayMessagingService:
    """Posts SMS, WhatsApp and push messages to an HTTP gateway.

    The gateway receives ``{"recipient", "subject", "body"}`` at
    ``<base_url>/<channel>`` and answers with a JSON body carrying the
    delivery ``id``.
    """

    def __init__(
        self,
        channel: MessagingType,
        base_url: str,
        *,
        api_token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.channel = channel
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def send(self, message: Message) -> Optional[str]:
        url = f"{self.base_url}/{self.channel.value.lower()}"
        payload = {
            "recipient": message.recipient,
            "subject": message.subject,
            "body": message.body,
        }
        try:
            client = await self._get_client()
            response = await client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "gateway_send_http_error",
                channel=self.channel.value,
                status_code=e.response.status_code,
                error=str(e),
            )
            raise ServerError("message delivery failed") from e
        except httpx.TimeoutException as e:
            logger.error("gateway_send_timeout", channel=self.channel.value, error=str(e))
            raise ServerError("message delivery timed out") from e
        except httpx.HTTPError as e:
            logger.error(
                "gateway_send_error",
                channel=self.channel.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ServerError("message delivery failed") from e
        except ValueError as e:
            logger.error("gateway_send_bad_response", channel=self.channel.value, error=str(e))
            raise ServerError("message delivery failed") from e

        delivery_id = data.get("id") if isinstance(data, dict) else None
        logger.info(
            "gateway_message_sent",
            channel=self.channel.value,
            to=mask_address(message.recipient),
            delivery_id=delivery_id,
        )
        return str(delivery_id) if delivery_id is not None else None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class MessagingServiceProvider:
    """Maps a channel to the service that delivers on it."""

    def __init__(self, services: Dict[MessagingType, MessagingService]) -> None:
        self._services = dict(services)

    def get(self, channel: "str | MessagingType") -> MessagingService:
        channel_type = MessagingType.parse(channel)
        service = self._services.get(channel_type)
        if service is None:
            raise UnsupportedChannelError(
                "messaging channel not configured",
                detail={"field": "channel", "value": channel_type.value},
            )
        return service

    async def close(self) -> None:
        for service in self._services.values():
            closer = getattr(service, "close", None)
            if closer is not None:
                await closer()
