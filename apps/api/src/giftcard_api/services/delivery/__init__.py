"""Gift card delivery services."""

from .channels import (
    EmailBackend,
    FallbackSMSBackend,
    InMemoryEmailBackend,
    InMemorySMSBackend,
    InfobipSMSBackend,
    SMSBackend,
    SMTPEmailBackend,
    TwilioSMSBackend,
    build_email_backend,
    build_sms_backend,
)
from .dispatcher import DeliveryDispatcher, DeliveryOutcome, backoff_delay

__all__ = [
    "DeliveryDispatcher",
    "DeliveryOutcome",
    "EmailBackend",
    "FallbackSMSBackend",
    "InMemoryEmailBackend",
    "InMemorySMSBackend",
    "InfobipSMSBackend",
    "SMSBackend",
    "SMTPEmailBackend",
    "TwilioSMSBackend",
    "backoff_delay",
    "build_email_backend",
    "build_sms_backend",
]
