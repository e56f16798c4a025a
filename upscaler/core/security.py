from cryptography.fernet import Fernet
from functools import lru_cache
import os
import logging

from ..settings import get_settings

logger = logging.getLogger(__name__)

KEY_FILE = get_settings().secret_key_file


def _load_or_create_key(path: str) -> bytes:
    if os.path.exists(path):
        with open(path, "rb") as f:
            return f.read()
    logger.warning("Generating new encryption key...")
    key_dir = os.path.dirname(path)
    if key_dir:
        os.makedirs(key_dir, exist_ok=True)
    key = Fernet.generate_key()
    with open(path, "wb") as f:
        f.write(key)
    return key


@lru_cache
def _cipher() -> Fernet:
    return Fernet(_load_or_create_key(KEY_FILE))


def encrypt_token(token: str) -> str:
    if not token:
        return ""
    return _cipher().encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """Raises cryptography.fernet.InvalidToken if the key file changed."""
    if not encrypted_token:
        return ""
    return _cipher().decrypt(encrypted_token.encode()).decode()


def mask_token(token: str) -> str:
    """Show at most 8 leading characters and never more than half the token."""
    token = token or ""
    visible = min(8, len(token) // 2)
    return f"{token[:visible]}..."
