import base64

import pytest

from campaign_mailer.encryption import (
    MIN_ENCODED_LENGTH,
    SALT_LENGTH,
    DecryptionError,
    decrypt_maybe_legacy,
    decrypt_strict,
    encrypt,
    encrypt_optional,
    generate_secret,
    looks_encrypted,
)

SECRET = "encryption-test-secret"


def test_encrypt_round_trip_and_randomised_output():
    first = encrypt("smtp-password", SECRET)
    second = encrypt("smtp-password", SECRET)

    assert first != second
    assert decrypt_strict(first, SECRET) == "smtp-password"
    assert decrypt_strict(second, SECRET) == "smtp-password"


def test_encrypted_value_has_expected_layout():
    token = encrypt("x", SECRET)
    raw = base64.b64decode(token)
    # salt, iv, tag and one byte of ciphertext
    assert len(raw) == SALT_LENGTH + 16 + 16 + 1
    assert looks_encrypted(token)


def test_unicode_content_survives():
    text = "Grüße an {{Firma}} ✓"
    assert decrypt_strict(encrypt(text, SECRET), SECRET) == text


def test_wrong_secret_is_rejected():
    token = encrypt("value", SECRET)
    with pytest.raises(DecryptionError):
        decrypt_strict(token, "another-secret")


def test_tampered_ciphertext_is_rejected():
    raw = bytearray(base64.b64decode(encrypt("value", SECRET)))
    raw[-1] ^= 0x01
    with pytest.raises(DecryptionError):
        decrypt_strict(base64.b64encode(bytes(raw)).decode("ascii"), SECRET)


@pytest.mark.parametrize("value", ["", "plain-password", "c2hvcnQ=", None])
def test_strict_rejects_non_ciphertext(value):
    with pytest.raises(DecryptionError) as excinfo:
        decrypt_strict(value, SECRET)
    assert str(excinfo.value) == "Decryption failed"


def test_legacy_plaintext_passes_through():
    assert decrypt_maybe_legacy("someone@example.com", SECRET) == "someone@example.com"
    assert decrypt_maybe_legacy("Hello there, this is an unencrypted body.", SECRET) == (
        "Hello there, this is an unencrypted body."
    )


def test_legacy_decrypt_still_rejects_corrupt_ciphertext():
    raw = bytearray(base64.b64decode(encrypt("value", SECRET)))
    raw[SALT_LENGTH] ^= 0xFF
    corrupt = base64.b64encode(bytes(raw)).decode("ascii")
    assert looks_encrypted(corrupt)
    with pytest.raises(DecryptionError):
        decrypt_maybe_legacy(corrupt, SECRET)


def test_looks_encrypted_heuristic():
    assert not looks_encrypted(None)
    assert not looks_encrypted("A" * (MIN_ENCODED_LENGTH - 1))
    assert not looks_encrypted("not base64 at all " * 10)
    # valid base64 but too short once decoded
    assert not looks_encrypted(base64.b64encode(b"x" * 60).decode("ascii") + "A" * 20)


def test_encrypt_optional():
    assert encrypt_optional(None, SECRET) is None
    assert encrypt_optional("", SECRET) == ""
    assert decrypt_strict(encrypt_optional("Sender", SECRET), SECRET) == "Sender"


def test_generate_secret_is_random():
    assert generate_secret() != generate_secret()
    assert len(generate_secret()) >= 48
