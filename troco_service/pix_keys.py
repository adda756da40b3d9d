"""
PIX key detection and validation
"""
import re
from enum import Enum
from typing import Optional

from troco_service.errors import InvalidKeyFormat


class PixKeyType(str, Enum):
    CPF = "cpf"
    CNPJ = "cnpj"
    EMAIL = "email"
    PHONE = "phone"
    RANDOM = "random"


# Detection order matters: the first matching pattern wins
_PATTERNS = (
    (PixKeyType.CPF, re.compile(r"\d{3}\.\d{3}\.\d{3}-\d{2}")),
    (PixKeyType.CNPJ, re.compile(r"\d{2}\.\d{3}\.\d{3}/\d{4}-\d{2}")),
    (PixKeyType.EMAIL, re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")),
    (PixKeyType.PHONE, re.compile(r"\+55\d{2}\d{5}\d{4}")),
    (PixKeyType.RANDOM, re.compile(r"[a-zA-Z0-9]{32}")),
)
_BY_TYPE = dict(_PATTERNS)


def classify(key) -> Optional[PixKeyType]:
    """Return the type of ``key`` or None when no pattern matches"""
    if not isinstance(key, str):
        return None
    for key_type, pattern in _PATTERNS:
        if pattern.fullmatch(key):
            return key_type
    return None


def validate(key, key_type) -> PixKeyType:
    """Re-check ``key`` against an explicitly asserted type"""
    try:
        key_type = PixKeyType(key_type)
    except ValueError:
        raise InvalidKeyFormat(f"Unknown PIX key type: {key_type!r}")
    if not isinstance(key, str) or not _BY_TYPE[key_type].fullmatch(key):
        raise InvalidKeyFormat(f"PIX key does not match the {key_type.value} format",
                               context={"pix_key_type": key_type.value})
    return key_type


def resolve_key_type(key, asserted=None) -> PixKeyType:
    """Validate against ``asserted`` when given, otherwise detect"""
    if asserted:
        return validate(key, asserted)
    key_type = classify(key)
    if key_type is None:
        raise InvalidKeyFormat("PIX key format not recognized")
    return key_type
