"""Random credential generation for store databases and session secrets."""
import secrets

PASSWORD_CHARSET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789!@#$%^&*"

DEFAULT_PASSWORD_LENGTH = 16
SECRET_KEY_LENGTH = 32


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    """Return a random string drawn uniformly from PASSWORD_CHARSET."""
    if length <= 0:
        raise ValueError("Password length must be positive")
    return "".join(secrets.choice(PASSWORD_CHARSET) for _ in range(length))


def generate_secret_key() -> str:
    """Longer variant used for JWT / cookie signing secrets."""
    return generate_password(SECRET_KEY_LENGTH)
