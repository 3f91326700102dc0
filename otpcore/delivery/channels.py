# otpcore/delivery/channels.py
"""
Channel adapters for OTP and notification delivery.

This module provides:
- Abstract channel interface (ChannelAdapter base class)
- Stub implementation (logs instead of sending, for development and tests)
- httpx implementations: Phone.email (sms + email), Twilio (sms), Resend (email)
- ChannelRegistry: the service catalog the preference resolver plans against

Infrastructure Decision:
- Adapters are thin: the orchestrator owns ordering, fallback and retry
- Every live call is bounded by an httpx timeout (10s); timeouts and
  transport errors come back as failed SendOutcomes, never as exceptions

Environment Variables:
- DELIVERY_PROVIDER: "stub" (default) or "live"
- PHONE_EMAIL_API_URL / PHONE_EMAIL_API_KEY
- TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN / TWILIO_FROM_NUMBER
- EMAIL_API_KEY / EMAIL_FROM (Resend, fills the "smtp" catalog slot)
"""

from __future__ import annotations

import os
import html
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

import httpx

from otpcore.db import utcnow
from otpcore.delivery.health import ServiceHealth
from otpcore.models import OTP_TTL_MINUTES, ServiceInfo
from otpcore.privacy_utils import mask_contact

log = logging.getLogger("otpcore.channels")

HTTP_TIMEOUT_SECONDS = 10.0


# ============================================================
# Messages and Outcomes
# ============================================================

@dataclass
class ChannelMessage:
    """What to send. code is set for passcode deliveries only."""

    subject: str
    body: str
    code: Optional[str] = None


@dataclass
class SendOutcome:
    success: bool
    external_id: Optional[str] = None
    estimated_delivery: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    test_mode: bool = False


def verification_message(code: str, purpose: str) -> ChannelMessage:
    """Message for a passcode delivery."""
    target = "phone number" if purpose == "phone" else "email address"
    return ChannelMessage(
        subject="Your verification code",
        body=(
            f"Your verification code is {code}. It expires in {OTP_TTL_MINUTES} minutes. "
            f"Use it to verify your {target}. If you didn't request this code, ignore this message."
        ),
        code=code,
    )


# ============================================================
# Abstract Channel Adapter
# ============================================================

class ChannelAdapter(ABC):
    """
    Abstract base class for delivery services.

    Implementations:
    - StubChannelAdapter: Logs to console (development, tests)
    - PhoneEmailAdapter: Phone.email API (sms + email)
    - TwilioSMSAdapter: Twilio Messages API (sms)
    - ResendEmailAdapter: Resend API (email)
    """

    service_name: str = ""
    display_name: str = ""
    capabilities: Sequence[str] = ()
    priority: int = 99

    @abstractmethod
    async def send(
        self,
        method: str,
        recipient: str,
        message: ChannelMessage,
        display_name: Optional[str] = None,
    ) -> SendOutcome:
        """
        Send a message to recipient over method ("sms" or "email").

        Returns:
            SendOutcome; failures are reported, not raised.
        """

    def is_configured(self) -> bool:
        return True

    def info(self) -> ServiceInfo:
        return ServiceInfo(
            service_name=self.service_name,
            display_name=self.display_name,
            capabilities=list(self.capabilities),
            priority=self.priority,
            status="healthy" if self.is_configured() else "unconfigured",
        )


# ============================================================
# Stub Implementation (Development)
# ============================================================

class StubChannelAdapter(ChannelAdapter):
    """
    Stub channel that logs instead of sending.

    Use in development and tests. Never use in production. Sent messages are
    kept in `outbox`; set `fail` (or add methods to `fail_methods`) to make
    sends fail.
    """

    def __init__(
        self,
        service_name: str,
        display_name: str,
        capabilities: Sequence[str],
        priority: int,
        estimated_delivery: int = 30,
    ):
        self.service_name = service_name
        self.display_name = display_name
        self.capabilities = tuple(capabilities)
        self.priority = priority
        self.estimated_delivery = estimated_delivery
        self.fail = False
        self.fail_methods: set = set()
        self.outbox: List[dict] = []
        self._counter = 0

    async def send(self, method, recipient, message, display_name=None):
        if method not in self.capabilities:
            return SendOutcome(False, error=f"{self.service_name} does not support {method}",
                               error_code="UNSUPPORTED_METHOD")
        if self.fail or method in self.fail_methods:
            log.info("[STUB %s] Simulated %s failure to %s", self.service_name, method,
                     mask_contact(recipient))
            return SendOutcome(False, error="Simulated delivery failure", error_code="STUB_FAILURE")

        self._counter += 1
        external_id = f"stub-{self.service_name}-{method}-{self._counter}"
        self.outbox.append({
            "method": method,
            "recipient": recipient,
            "subject": message.subject,
            "body": message.body,
            "code": message.code,
            "external_id": external_id,
            "sent_at": utcnow(),
        })
        # Plaintext code logged here only: this adapter never runs in production
        log.info("[STUB %s] %s to %s: %s", self.service_name, method, mask_contact(recipient),
                 message.code or message.subject)
        return SendOutcome(True, external_id=external_id,
                           estimated_delivery=self.estimated_delivery, test_mode=True)

    def last_code(self, recipient: str) -> Optional[str]:
        """Most recent code sent to recipient (tests)."""
        for item in reversed(self.outbox):
            if item["recipient"] == recipient and item["code"]:
                return item["code"]
        return None


# ============================================================
# httpx Implementations (Production)
# ============================================================

async def _post(url: str, **kwargs) -> httpx.Response:
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS) as client:
        return await client.post(url, **kwargs)


def _transport_failure(service: str, e: Exception) -> SendOutcome:
    if isinstance(e, httpx.TimeoutException):
        log.error("%s request timed out", service)
        return SendOutcome(False, error="Request timed out", error_code="TIMEOUT")
    log.error("%s request failed: %s", service, str(e)[:100])
    return SendOutcome(False, error=str(e)[:200], error_code="NETWORK_ERROR")


class PhoneEmailAdapter(ChannelAdapter):
    """
    Phone.email API (sms + email).

    Requires:
    - PHONE_EMAIL_API_KEY
    - PHONE_EMAIL_API_URL (optional, defaults to https://api.phone.email/v1)
    """

    service_name = "phone-email"
    display_name = "Phone.email"
    capabilities = ("sms", "email")
    priority = 1

    def __init__(self):
        self.api_key = os.getenv("PHONE_EMAIL_API_KEY", "")
        self.api_url = os.getenv("PHONE_EMAIL_API_URL", "https://api.phone.email/v1").rstrip("/")
        if not self.api_key:
            log.warning("PHONE_EMAIL_API_KEY not set for Phone.email service")

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, method, recipient, message, display_name=None):
        if not self.api_key:
            return SendOutcome(False, error="Phone.email not configured", error_code="NOT_CONFIGURED")

        payload = {"to": recipient, "message": message.body, "type": method}
        if method == "email":
            payload["subject"] = message.subject

        try:
            response = await _post(
                f"{self.api_url}/send",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
        except httpx.HTTPError as e:
            return _transport_failure(self.service_name, e)

        if response.status_code in (200, 201, 202):
            data = response.json() if response.content else {}
            log.info("Sent %s via Phone.email to %s", method, mask_contact(recipient))
            return SendOutcome(
                True,
                external_id=data.get("messageId"),
                estimated_delivery=data.get("estimatedDelivery") or (60 if method == "sms" else 30),
            )

        log.error("Phone.email API error: %s %s", response.status_code, response.text[:100])
        return SendOutcome(False, error=f"HTTP {response.status_code}", error_code=f"HTTP_{response.status_code}")


class TwilioSMSAdapter(ChannelAdapter):
    """
    Twilio Messages API (sms only).

    Requires:
    - TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_FROM_NUMBER
    """

    service_name = "twilio"
    display_name = "Twilio SMS"
    capabilities = ("sms",)
    priority = 2

    def __init__(self):
        self.account_sid = os.getenv("TWILIO_ACCOUNT_SID", "")
        self.auth_token = os.getenv("TWILIO_AUTH_TOKEN", "")
        self.from_number = os.getenv("TWILIO_FROM_NUMBER", "")
        if not self.is_configured():
            log.warning("Twilio credentials not set for Twilio SMS service")

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send(self, method, recipient, message, display_name=None):
        if method != "sms":
            return SendOutcome(False, error="Twilio supports sms only", error_code="UNSUPPORTED_METHOD")
        if not self.is_configured():
            return SendOutcome(False, error="Twilio not configured", error_code="NOT_CONFIGURED")

        url = f"https://api.twilio.com/2010-04-01/Accounts/{self.account_sid}/Messages.json"
        try:
            response = await _post(
                url,
                auth=(self.account_sid, self.auth_token),
                data={"To": recipient, "From": self.from_number, "Body": message.body},
            )
        except httpx.HTTPError as e:
            return _transport_failure(self.service_name, e)

        if response.status_code in (200, 201):
            log.info("Sent sms via Twilio to %s", mask_contact(recipient))
            return SendOutcome(True, external_id=response.json().get("sid"), estimated_delivery=30)

        log.error("Twilio API error: %s %s", response.status_code, response.text[:100])
        return SendOutcome(False, error=f"HTTP {response.status_code}", error_code=f"HTTP_{response.status_code}")


class ResendEmailAdapter(ChannelAdapter):
    """
    Email via the Resend API; fills the "smtp" slot of the catalog.

    Requires:
    - EMAIL_API_KEY: Resend API key
    - EMAIL_FROM: Sender email (optional)
    """

    service_name = "smtp"
    display_name = "SMTP Email"
    capabilities = ("email",)
    priority = 3

    def __init__(self):
        self.api_key = os.getenv("EMAIL_API_KEY", "")
        self.from_email = os.getenv("EMAIL_FROM", "noreply@otpcore.local")
        if not self.api_key:
            log.warning("EMAIL_API_KEY not set for email service")

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, method, recipient, message, display_name=None):
        if method != "email":
            return SendOutcome(False, error="Email service supports email only", error_code="UNSUPPORTED_METHOD")
        if not self.api_key:
            return SendOutcome(False, error="Email service not configured", error_code="NOT_CONFIGURED")

        highlight = ""
        if message.code:
            highlight = f"""
                <div style="font-size: 32px; font-weight: bold; letter-spacing: 4px;
                            padding: 20px; background: #f5f5f5; text-align: center;
                            border-radius: 8px; margin: 20px 0;">
                    {html.escape(message.code)}
                </div>
            """
        try:
            response = await _post(
                "https://api.resend.com/emails",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "from": self.from_email,
                    "to": [recipient],
                    "subject": message.subject,
                    "text": message.body,
                    "html": f"""
                        <div style="font-family: sans-serif; max-width: 400px; margin: 0 auto;">
                            <h2 style="color: #333;">{html.escape(message.subject)}</h2>
                            {highlight}
                            <p>{html.escape(message.body)}</p>
                        </div>
                    """,
                },
            )
        except httpx.HTTPError as e:
            return _transport_failure(self.service_name, e)

        if response.status_code == 200:
            log.info("Sent email via Resend to %s", mask_contact(recipient))
            return SendOutcome(True, external_id=response.json().get("id"), estimated_delivery=30)

        log.error("Resend API error: %s %s", response.status_code, response.text[:100])
        return SendOutcome(False, error=f"HTTP {response.status_code}", error_code=f"HTTP_{response.status_code}")


# ============================================================
# Service Catalog
# ============================================================

class ChannelRegistry:
    """
    Adapters by service name, advertised as ServiceInfo in priority order.

    Services whose circuit is open (see otpcore.delivery.health) are left out
    of the catalog until their reset period has passed.
    """

    def __init__(self, adapters: Iterable[ChannelAdapter], health: Optional[ServiceHealth] = None):
        self._adapters: Dict[str, ChannelAdapter] = {a.service_name: a for a in adapters}
        self.health = health or ServiceHealth()

    def get(self, service_name: str) -> Optional[ChannelAdapter]:
        return self._adapters.get(service_name)

    def display_name(self, service_name: str) -> str:
        adapter = self.get(service_name)
        return adapter.display_name if adapter else service_name

    def available_services(self, methods: Optional[Iterable[str]] = None) -> List[ServiceInfo]:
        """
        Configured services with a closed or half-open circuit, ordered by priority.

        Args:
            methods: If given, capabilities are narrowed to these methods and
                services left with none are dropped.
        """
        wanted = set(methods) if methods is not None else None
        services = []
        for adapter in self._adapters.values():
            info = adapter.info()
            if info.status != "healthy" or not self.health.is_available(info.service_name):
                continue
            if wanted is not None:
                info.capabilities = [c for c in info.capabilities if c in wanted]
                if not info.capabilities:
                    continue
            services.append(info)
        return sorted(services, key=lambda s: s.priority)


def stub_adapters() -> List[StubChannelAdapter]:
    """Stub adapters mirroring the live catalog."""
    return [
        StubChannelAdapter("phone-email", "Phone.email", ("sms", "email"), 1),
        StubChannelAdapter("twilio", "Twilio SMS", ("sms",), 2),
        StubChannelAdapter("smtp", "SMTP Email", ("email",), 3, estimated_delivery=10),
    ]


def get_channel_registry() -> ChannelRegistry:
    """
    Build the channel registry from DELIVERY_PROVIDER.

    Providers:
    - "stub" (default): stub adapters for every catalog service
    - "live": Phone.email, Twilio and Resend adapters (unconfigured ones are
      not advertised)
    """
    provider = os.getenv("DELIVERY_PROVIDER", "stub").lower().strip()

    if provider == "live":
        return ChannelRegistry([PhoneEmailAdapter(), TwilioSMSAdapter(), ResendEmailAdapter()])

    if provider != "stub":
        log.warning("Unknown DELIVERY_PROVIDER '%s', falling back to stub", provider)
    return ChannelRegistry(stub_adapters())
