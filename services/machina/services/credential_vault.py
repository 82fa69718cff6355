"""Per-team credential encryption and signed OAuth state tokens.

Encryption is AES-256-GCM under a key derived per team with HKDF-SHA256 from
a process-wide master key. The associated data "{team_id}:{scope_id}" binds
each ciphertext to the exact team and scope (provider account, integration
or SSH key) it was written for, so a row moved to another team or scope
fails authentication even though the key may be correct.

Stored format: "ivHex:authTagHex:cipherHex" (16-byte IV, 16-byte tag).

OAuth state tokens are base64url("teamId:userId:timestampMs:nonceHex:hmacHex")
with HMAC-SHA256 keyed by the master key. Validation never raises; any
problem yields None.

Master key sourced from MACHINA_ENCRYPTION_KEY, falling back to a key file
that is generated on first start.
"""

import base64
import binascii
import hashlib
import hmac
import json
import os
import secrets
import time
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from machina.logging_config import get_logger

logger = get_logger(__name__)

HKDF_SALT = b"machina-integration-v1"
KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
DEFAULT_OAUTH_MAX_AGE_MS = 10 * 60 * 1000

_HEX_DIGITS = frozenset("0123456789abcdef")


class VaultError(ValueError):
    """Base class for vault failures on untrusted input."""


class CredentialFormatError(VaultError):
    """The stored record is not three well-formed hex fields."""


class CredentialDecryptionError(VaultError):
    """Authentication failed. Wrong key and tampering are not distinguished."""


class VaultNotConfiguredError(RuntimeError):
    """No usable master key material."""


def _is_hex(value: str) -> bool:
    return bool(value) and len(value) % 2 == 0 and set(value) <= _HEX_DIGITS


class CredentialVault:
    """AEAD credential encryption and HMAC-signed OAuth state.

    All operations are synchronous and CPU-bound; the instance holds no
    mutable state and needs no locking.
    """

    def __init__(self, master_key: bytes) -> None:
        if len(master_key) < 16:
            raise VaultNotConfiguredError("Master key must be at least 16 bytes")
        self._master_key = master_key

    # --- Credential encryption ---

    def derive_team_key(self, team_id: str) -> bytes:
        """Derive the 32-byte key for one team."""
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=HKDF_SALT,
            info=f"team:{team_id}:credentials".encode(),
        )
        return hkdf.derive(self._master_key)

    @staticmethod
    def _aad(team_id: str, scope_id: str) -> bytes:
        return f"{team_id}:{scope_id}".encode()

    def encrypt(self, team_id: str, scope_id: str, plaintext: dict[str, Any]) -> str:
        """Encrypt a JSON-serializable map for (team_id, scope_id)."""
        key = self.derive_team_key(team_id)
        iv = secrets.token_bytes(IV_LENGTH)
        sealed = AESGCM(key).encrypt(
            iv, json.dumps(plaintext).encode(), self._aad(team_id, scope_id)
        )
        # cryptography appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, team_id: str, scope_id: str, encrypted: str) -> dict[str, Any]:
        """Decrypt a record written by encrypt() for the same (team_id, scope_id)."""
        parts = encrypted.split(":")
        if len(parts) != 3:
            raise CredentialFormatError("Invalid encrypted credential format")
        iv_hex, tag_hex, cipher_hex = parts
        if not (_is_hex(iv_hex) and _is_hex(tag_hex) and _is_hex(cipher_hex)):
            raise CredentialFormatError("Invalid encrypted credential format")

        iv = bytes.fromhex(iv_hex)
        tag = bytes.fromhex(tag_hex)
        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise CredentialFormatError("Invalid encrypted credential format")

        key = self.derive_team_key(team_id)
        try:
            plaintext = AESGCM(key).decrypt(
                iv, bytes.fromhex(cipher_hex) + tag, self._aad(team_id, scope_id)
            )
        except InvalidTag:
            raise CredentialDecryptionError("Failed to decrypt credentials") from None

        try:
            data = json.loads(plaintext)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise CredentialDecryptionError("Failed to decrypt credentials") from None
        if not isinstance(data, dict):
            raise CredentialDecryptionError("Failed to decrypt credentials")
        return data

    # --- OAuth state ---

    def _sign(self, payload: str) -> str:
        return hmac.new(self._master_key, payload.encode(), hashlib.sha256).hexdigest()

    def generate_oauth_state(self, team_id: str, user_id: str) -> str:
        """Build a signed, URL-safe OAuth state token."""
        if ":" in team_id or ":" in user_id:
            raise ValueError("team_id and user_id must not contain ':'")
        timestamp_ms = int(time.time() * 1000)
        nonce = secrets.token_hex(16)
        payload = f"{team_id}:{user_id}:{timestamp_ms}:{nonce}"
        token = f"{payload}:{self._sign(payload)}".encode()
        return base64.urlsafe_b64encode(token).rstrip(b"=").decode()

    def validate_oauth_state(
        self, token: str, max_age_ms: int = DEFAULT_OAUTH_MAX_AGE_MS
    ) -> dict[str, str] | None:
        """Return {"team_id", "user_id"} for a valid, unexpired token, else None."""
        try:
            padded = token + "=" * (-len(token) % 4)
            decoded = base64.urlsafe_b64decode(padded.encode()).decode()
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return None

        parts = decoded.split(":")
        if len(parts) != 5 or not all(parts):
            return None
        team_id, user_id, timestamp_str, nonce, provided = parts

        try:
            timestamp_ms = int(timestamp_str)
        except ValueError:
            return None

        expected = self._sign(f"{team_id}:{user_id}:{timestamp_str}:{nonce}")
        if not hmac.compare_digest(provided.encode(), expected.encode()):
            return None

        if int(time.time() * 1000) - timestamp_ms > max_age_ms:
            return None

        return {"team_id": team_id, "user_id": user_id}


# --- Process-wide instance ---

_vault: CredentialVault | None = None


def load_master_key(encryption_key: str, key_file: str) -> bytes:
    """Resolve master key bytes from config, or from (a newly generated) key file."""
    if encryption_key:
        try:
            return bytes.fromhex(encryption_key.strip())
        except ValueError:
            raise VaultNotConfiguredError("MACHINA_ENCRYPTION_KEY must be hex-encoded") from None

    path = Path(key_file)
    if path.exists():
        try:
            return bytes.fromhex(path.read_text().strip())
        except ValueError:
            raise VaultNotConfiguredError(f"Key file {key_file} is not hex-encoded") from None

    path.parent.mkdir(parents=True, exist_ok=True)
    new_key = secrets.token_hex(KEY_LENGTH)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(new_key)
    logger.warning("Generated new encryption key file", path=key_file)
    return bytes.fromhex(new_key)


def init_vault() -> CredentialVault:
    """Initialize the vault from config. Call during API lifespan startup."""
    global _vault  # noqa: PLW0603

    from machina.config import settings

    _vault = CredentialVault(
        load_master_key(settings.encryption_key, settings.encryption_key_file)
    )
    logger.info("Credential vault initialized")
    return _vault


def get_vault() -> CredentialVault:
    """Return the process-wide vault. Raises if not initialized."""
    if _vault is None:
        raise VaultNotConfiguredError("Credential vault not initialized; call init_vault() first")
    return _vault
