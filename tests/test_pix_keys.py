import random
import string

import pytest

from troco_service.errors import InvalidKeyFormat
from troco_service.pix_keys import PixKeyType, classify, resolve_key_type, validate


def _digits(n):
    return "".join(random.choice(string.digits) for _ in range(n))


def sample_key(key_type: PixKeyType) -> str:
    if key_type == PixKeyType.CPF:
        return f"{_digits(3)}.{_digits(3)}.{_digits(3)}-{_digits(2)}"
    if key_type == PixKeyType.CNPJ:
        return f"{_digits(2)}.{_digits(3)}.{_digits(3)}/{_digits(4)}-{_digits(2)}"
    if key_type == PixKeyType.EMAIL:
        user = "".join(random.choice(string.ascii_lowercase) for _ in range(8))
        return f"{user}@example.com.br"
    if key_type == PixKeyType.PHONE:
        return f"+55{_digits(2)}{_digits(5)}{_digits(4)}"
    return "".join(random.choice(string.ascii_letters + string.digits) for _ in range(32))


class TestClassify:
    @pytest.mark.parametrize("key, expected", [
        ("123.456.789-09", PixKeyType.CPF),
        ("12.345.678/0001-95", PixKeyType.CNPJ),
        ("a@b.com", PixKeyType.EMAIL),
        ("+5511987654321", PixKeyType.PHONE),
        ("a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d6", PixKeyType.RANDOM),
    ])
    def test_known_formats(self, key, expected):
        assert classify(key) == expected

    @pytest.mark.parametrize("key", ["12345678909", "11987654321", "a@b", "", "   ", None, 42,
                                     "a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d", "+55 11 98765-4321"])
    def test_unrecognized_keys(self, key):
        assert classify(key) is None

    @pytest.mark.parametrize("key_type", list(PixKeyType))
    def test_generated_samples_classify_back(self, key_type):
        for _ in range(20):
            assert classify(sample_key(key_type)) == key_type

    def test_deterministic(self):
        assert classify("a@b.com") is classify("a@b.com")


class TestValidate:
    def test_asserted_type_must_match(self):
        assert validate("123.456.789-09", "cpf") == PixKeyType.CPF
        with pytest.raises(InvalidKeyFormat) as exc:
            validate("a@b.com", PixKeyType.PHONE)
        assert exc.value.code == "INVALID_KEY"
        assert exc.value.field == "pix_key"

    def test_unknown_type(self):
        with pytest.raises(InvalidKeyFormat):
            validate("a@b.com", "iban")

    def test_resolve_detects_or_validates(self):
        assert resolve_key_type("a@b.com") == PixKeyType.EMAIL
        assert resolve_key_type("+5511987654321", "phone") == PixKeyType.PHONE
        with pytest.raises(InvalidKeyFormat):
            resolve_key_type("not a key")
