"""Tests for encryption service."""

import pytest
from unittest.mock import patch
from cryptography.fernet import Fernet, InvalidToken

from rangesync.config import settings
from rangesync.services.encryption_service import EncryptionService


def test_encrypt_decrypt():
    """Test that encryption service can encrypt and decrypt a token."""
    service = EncryptionService()

    plaintext = "docker-proxy-token-12345"
    encrypted = service.encrypt(plaintext)

    assert encrypted != plaintext
    assert service.decrypt(encrypted) == plaintext


def test_encryption_is_non_deterministic():
    """Test that the same token encrypts to different ciphertexts."""
    service = EncryptionService()

    first = service.encrypt("same-token")
    second = service.encrypt("same-token")

    assert first != second
    assert service.decrypt(first) == service.decrypt(second) == "same-token"


def test_decrypt_with_other_key_fails():
    """Test that tokens encrypted under another key are rejected."""
    service = EncryptionService()
    foreign = Fernet(Fernet.generate_key()).encrypt(b"token").decode()

    with pytest.raises(InvalidToken):
        service.decrypt(foreign)


def test_missing_key_exits(capsys):
    """Test that a missing encryption key stops the application."""
    with patch.object(settings, "encryption_key", None):
        with pytest.raises(SystemExit) as exc_info:
            EncryptionService()

    assert exc_info.value.code == 1
    assert "ENCRYPTION_KEY" in capsys.readouterr().err


def test_invalid_key_exits(capsys):
    """Test that a malformed encryption key stops the application."""
    with patch.object(settings, "encryption_key", "not-a-fernet-key"):
        with pytest.raises(SystemExit):
            EncryptionService()

    assert "Invalid ENCRYPTION_KEY" in capsys.readouterr().err
