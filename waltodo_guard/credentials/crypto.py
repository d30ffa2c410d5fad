"""AES-256-GCM encryption for stored credentials.

The master key is a 32-byte random key stored next to the credential document
(mode 0600, directory 0700).  It is generated on first use and never leaves
the machine.  Each payload gets a unique 12-byte nonce prepended to the
ciphertext, and the provider id is bound as associated data so an encrypted
entry cannot be moved under another provider's name.
"""

from __future__ import annotations

import os
import secrets
import stat
import tempfile
from pathlib import Path

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16

OWNER_ONLY_FILE = stat.S_IRUSR | stat.S_IWUSR  # 600
OWNER_READ_ONLY = stat.S_IRUSR  # 400
OWNER_ONLY_DIR = stat.S_IRWXU  # 700


def ensure_private_dir(path: Path) -> None:
    path.mkdir(mode=OWNER_ONLY_DIR, parents=True, exist_ok=True)
    path.chmod(OWNER_ONLY_DIR)


def generate_master_key() -> bytes:
    return secrets.token_bytes(KEY_SIZE)


def write_master_key(key_path: Path, key: bytes) -> None:
    """Atomically replace the key at *key_path* (temp file + ``os.replace``, mode 0600)."""
    if len(key) != KEY_SIZE:
        raise ValueError(f"Master key must be {KEY_SIZE} bytes, got {len(key)}")
    ensure_private_dir(key_path.parent)
    fd, tmp_name = tempfile.mkstemp(dir=key_path.parent, prefix=".master-", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(key)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, OWNER_ONLY_FILE)
        os.replace(tmp_name, key_path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def write_read_only(path: Path, data: bytes) -> None:
    """Create *path* exclusively with mode 0400 and write *data*."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, OWNER_READ_ONLY)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


def load_or_create_master_key(key_path: Path) -> bytes:
    """Return the master key at *key_path*, generating it if missing."""
    key_path = key_path.expanduser()
    if not key_path.exists():
        ensure_private_dir(key_path.parent)
        try:
            fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, OWNER_ONLY_FILE)
        except FileExistsError:
            # Another process created it first; fall through and read theirs.
            pass
        else:
            with os.fdopen(fd, "wb") as f:
                f.write(generate_master_key())

    key = key_path.read_bytes()
    if len(key) != KEY_SIZE:
        raise ValueError(f"Master key must be {KEY_SIZE} bytes, got {len(key)}")
    return key


def encrypt(plaintext: str, master_key: bytes, associated_data: bytes | None = None) -> bytes:
    """Encrypt with AES-256-GCM.  Returns nonce (12 bytes) + ciphertext + tag (16 bytes)."""
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    nonce = secrets.token_bytes(NONCE_SIZE)
    ciphertext = AESGCM(master_key).encrypt(nonce, plaintext.encode("utf-8"), associated_data)
    return nonce + ciphertext


def decrypt(data: bytes, master_key: bytes, associated_data: bytes | None = None) -> str:
    """Decrypt nonce + ciphertext + tag back to plaintext.

    Raises ``ValueError`` for truncated input and
    ``cryptography.exceptions.InvalidTag`` when the data or key do not match.
    """
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    if len(data) < NONCE_SIZE + TAG_SIZE:
        raise ValueError("Encrypted data too short")
    nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
    plaintext = AESGCM(master_key).decrypt(nonce, ciphertext, associated_data)
    return plaintext.decode("utf-8")
