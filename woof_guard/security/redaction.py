"""Log redaction: classifies fields and values by sensitivity and masks them.

Every payload that reaches a log sink or the alert channel passes through
``sanitize_object``. Classification is a pure function of the field name and
the value's shape, so it works on arbitrary nested dicts and lists.
"""

from __future__ import annotations

import re
import traceback
from collections.abc import Mapping
from enum import Enum

REDACTED = "[REDACTED]"
CIRCULAR = "[CIRCULAR_REFERENCE]"
MAX_DEPTH = 10


class RedactionLevel(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"
    EMAIL = "email"
    PHONE = "phone"


def _norm(name: str) -> str:
    return name.replace("_", "").replace("-", "").lower()


# Names are normalised: "hashedPassword", "hashed_password" and
# "hashed-password" all map to "hashedpassword".
SENSITIVE_FIELDS = frozenset(_norm(n) for n in (
    "password", "hashedPassword", "token", "accessToken", "refreshToken",
    "authToken", "jwtToken", "apiKey", "secretKey", "secret", "apiSecret",
    "secretAccessKey", "accessKeyId", "stripeToken", "stripeCustomerId",
    "stripeKey", "creditCard", "cardNumber", "cvv", "ssn", "pinCode", "otp",
    "verificationToken", "resetToken", "passwordResetToken",
    "twoFactorSecret", "privateKey", "publicKey", "encryptionKey",
    "decryptionKey", "authorization", "cookie",
))

PARTIAL_FIELDS = frozenset(_norm(n) for n in (
    "email", "phone", "phoneNumber", "mobileNumber", "userId", "senderId",
    "receiverId", "userChattingWithId", "matchedUserId", "id", "_id",
    "customerId", "stripeId",
))

_JWT = re.compile(r"^eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$")
_API_KEY_PREFIX = re.compile(r"^(sk_|pk_|api_key_|apikey_|secret_)", re.IGNORECASE)
_LONG_HEX = re.compile(r"^[a-f0-9]{40,}$")
_CARD = re.compile(r"^\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4,7}$")
_CVV = re.compile(r"^\d{3,4}$")
_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE,
)
_OBJECT_ID = re.compile(r"^[0-9a-f]{24}$")
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE = re.compile(r"^(\+\d{1,3}[-.\s]?)?\d{3}[-.\s]?\d{3}[-.\s]?\d{4}$")

_MESSAGE_SCRUBBERS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"user[_-]?id[:\s]*[0-9a-f-]{36,}", re.IGNORECASE), "userId: [REDACTED]"),
    (re.compile(r"token[:\s]*[a-z0-9.]{50,}", re.IGNORECASE), "token: [REDACTED]"),
    (re.compile(r"password[:\s]*\S+", re.IGNORECASE), "password: [REDACTED]"),
    (re.compile(r"email[:\s]*\S+@\S+", re.IGNORECASE), "email: [REDACTED]"),
    (re.compile(r"stripe[_-]?[a-z_]*[:\s]*[a-z0-9_]{20,}", re.IGNORECASE),
     "stripe_data: [REDACTED]"),
]


def is_sensitive_field(field_name: str) -> bool:
    return _norm(field_name) in SENSITIVE_FIELDS


def is_partial_field(field_name: str) -> bool:
    return _norm(field_name) in PARTIAL_FIELDS


def classify(field_name: str | None, value: object) -> RedactionLevel:
    """Decide how a value must be masked before it may be logged."""
    if value is None:
        return RedactionLevel.NONE
    if field_name:
        if is_sensitive_field(field_name):
            return RedactionLevel.FULL
        if is_partial_field(field_name):
            return RedactionLevel.PARTIAL
    if not isinstance(value, str):
        return RedactionLevel.NONE

    if _JWT.match(value):
        return RedactionLevel.FULL
    if _API_KEY_PREFIX.match(value) or (len(value) > 32 and _LONG_HEX.match(value)):
        return RedactionLevel.FULL
    if _CARD.match(value) and len(re.sub(r"\D", "", value)) >= 13:
        return RedactionLevel.FULL
    if field_name and ("cvc" in field_name.lower() or "cvv" in field_name.lower()):
        if _CVV.match(value):
            return RedactionLevel.FULL
    if _UUID.match(value) or _OBJECT_ID.match(value):
        return RedactionLevel.PARTIAL
    if _EMAIL.match(value):
        return RedactionLevel.EMAIL
    if _PHONE.match(value):
        return RedactionLevel.PHONE
    return RedactionLevel.NONE


def partially_redact(value: object, visible: int = 4) -> str:
    """Keep the first ``visible`` characters and mask the rest."""
    if value is None or value == "":
        return REDACTED
    text = str(value)
    if len(text) <= visible:
        return "****"
    return text[:visible] + "****"


def mask_email(value: str) -> str:
    local = value.split("@", 1)[0]
    return partially_redact(local, 3) + "@***"


def redact_value(field_name: str | None, value: object) -> object:
    level = classify(field_name, value)
    if level is RedactionLevel.NONE:
        return value
    if level is RedactionLevel.FULL:
        return REDACTED
    if level is RedactionLevel.PARTIAL:
        return partially_redact(value, 4)
    text = str(value)
    if level is RedactionLevel.EMAIL:
        return mask_email(text)
    return "****" + text[-4:]


def sanitize_object(obj: object, depth: int = 0) -> object:
    """Recursively redact a structure of dicts, lists and scalars."""
    if depth > MAX_DEPTH:
        return CIRCULAR
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        clean: dict[str, object] = {}
        for key, value in obj.items():
            name = str(key)
            if is_sensitive_field(name):
                clean[name] = REDACTED
            elif is_partial_field(name) and value is not None:
                clean[name] = partially_redact(value, 4)
            elif isinstance(value, (Mapping, list, tuple, set)):
                clean[name] = sanitize_object(value, depth + 1)
            else:
                clean[name] = redact_value(name, value)
        return clean
    if isinstance(obj, (list, tuple, set)):
        return [sanitize_object(item, depth + 1) for item in obj]
    return redact_value(None, obj)


def scrub_message(message: str) -> str:
    for pattern, replacement in _MESSAGE_SCRUBBERS:
        message = pattern.sub(replacement, message)
    return message


def sanitize_error(error: BaseException | None, production: bool = True) -> dict[str, object]:
    """Describe an exception without leaking identifiers, secrets or paths."""
    if error is None:
        return {"name": "Error", "message": "Unknown error", "stack": None}

    if production:
        stack: str | None = "[STACK_TRACE_REMOVED_IN_PRODUCTION]"
    else:
        raw = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        stack = re.sub(r"/[^:\s]+/[^:\s]+/", "/[PATH_REDACTED]/", raw)

    info: dict[str, object] = {
        "name": type(error).__name__,
        "message": scrub_message(str(error) or "Unknown error"),
        "stack": stack,
    }
    extras = {
        k: v for k, v in vars(error).items()
        if not k.startswith("_") and k not in info
    }
    if extras:
        info.update(sanitize_object(extras))  # type: ignore[arg-type]
    return info
