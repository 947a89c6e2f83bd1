import pytest

from services.credentials import (
    PASSWORD_CHARSET,
    SECRET_KEY_LENGTH,
    generate_password,
    generate_secret_key,
)


def test_default_password_length_and_charset():
    password = generate_password()
    assert len(password) == 16
    assert set(password) <= set(PASSWORD_CHARSET)


def test_secret_key_is_longer_variant():
    key = generate_secret_key()
    assert len(key) == SECRET_KEY_LENGTH == 32
    assert set(key) <= set(PASSWORD_CHARSET)


def test_passwords_are_not_repeated():
    assert len({generate_password() for _ in range(50)}) == 50


def test_rejects_non_positive_length():
    with pytest.raises(ValueError):
        generate_password(0)
