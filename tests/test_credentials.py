"""Tests for password rules and argon2 credential checks."""

import pytest

from conftest import STRONG_PASSWORD
from gatekeep.service.credentials import (
    is_valid_email,
    normalize_email,
    validate_password_strength,
)


class TestPasswordStrength:
    @pytest.mark.parametrize(
        "password",
        ["Short1!", "alllowercase1", "ALLUPPERCASE1", "NoDigitsOrSymbols", "A" * 30 + "a" * 30 + "12345"],
    )
    def test_weak_passwords_rejected(self, password):
        assert validate_password_strength(password) is not None

    @pytest.mark.parametrize("password", [STRONG_PASSWORD, "Abcdefg1", "Abcdefgh!", "Ab_" + "c" * 61])
    def test_strong_passwords_accepted(self, password):
        assert validate_password_strength(password) is None


class TestEmailHelpers:
    def test_normalize_email(self):
        assert normalize_email("  Ann@Example.COM ") == "ann@example.com"
        assert normalize_email(None) == ""

    @pytest.mark.parametrize("email, valid", [
        ("ann@example.com", True),
        ("ann@localhost", False),
        ("no-at-sign.example.com", False),
        ("two words@example.com", False),
    ])
    def test_is_valid_email(self, email, valid):
        assert is_valid_email(email) is valid


class TestCredentialStore:
    def test_hash_is_salted_argon2id(self, runtime):
        first = runtime.credentials.hash(STRONG_PASSWORD)
        second = runtime.credentials.hash(STRONG_PASSWORD)

        assert first.startswith("$argon2id$")
        assert first != second
        assert STRONG_PASSWORD not in first

    def test_verify_hash(self, runtime):
        digest = runtime.credentials.hash(STRONG_PASSWORD)

        assert runtime.credentials.verify_hash(digest, STRONG_PASSWORD)
        assert not runtime.credentials.verify_hash(digest, "Wrong-Horse-42")

    def test_verify_hash_rejects_garbage(self, runtime):
        assert not runtime.credentials.verify_hash("not-a-hash", STRONG_PASSWORD)
        assert not runtime.credentials.verify_hash(None, STRONG_PASSWORD)

    def test_verify_by_email(self, runtime, make_account):
        make_account("ann@example.com")

        assert runtime.credentials.verify(" ANN@example.com", STRONG_PASSWORD)
        assert not runtime.credentials.verify("ann@example.com", "Wrong-Horse-42")
        assert not runtime.credentials.verify("nobody@example.com", STRONG_PASSWORD)

    async def test_async_variants(self, runtime):
        digest = await runtime.credentials.hash_async(STRONG_PASSWORD)

        assert await runtime.credentials.verify_hash_async(digest, STRONG_PASSWORD)
        assert await runtime.credentials.verify_dummy_async(STRONG_PASSWORD) is None
