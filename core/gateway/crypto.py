"""
Webhook message cryptography

Implements the WeCom callback encryption scheme:

- Signature: hex digest (SHA-1 by default) over the lexicographically
  sorted concatenation of (token, timestamp, nonce, ciphertext).
- Cipher: AES-256-CBC. The key is the base64-decoded EncodingAESKey
  (43 chars + "="), the IV is the first 16 bytes of that key, and the
  plaintext is PKCS#7 padded to a 32-byte block.
- Framing: random(16) | msg_len (4 bytes, big-endian) | msg | receive_id
"""

import base64
import binascii
import hashlib
import hmac
import json
import os
import secrets
import struct
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from core.gateway.errors import ConfigError, SecurityError

KEY_MATERIAL_LENGTH = 43
AES_KEY_SIZE = 32
IV_SIZE = 16
RANDOM_PREFIX_SIZE = 16
PAD_BLOCK_BITS = 256  # the platform pads to 32-byte blocks

_DIGESTS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
}


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Ciphertext plus the signature material that authenticates it."""

    ciphertext: str
    signature: str
    timestamp: str
    nonce: str


def derive_key(encoding_aes_key: str) -> bytes:
    """Decode the 43-char EncodingAESKey into the 32-byte AES key."""
    value = (encoding_aes_key or "").strip()
    if len(value) != KEY_MATERIAL_LENGTH:
        raise ConfigError(f"EncodingAESKey must be {KEY_MATERIAL_LENGTH} characters, got {len(value)}")
    try:
        key = base64.b64decode(value + "=", validate=True)
    except (ValueError, binascii.Error) as exc:
        raise ConfigError(f"EncodingAESKey is not valid base64: {exc}") from exc
    if len(key) != AES_KEY_SIZE:
        raise ConfigError(f"EncodingAESKey must decode to {AES_KEY_SIZE} bytes, got {len(key)}")
    return key


def compute_signature(
    token: str,
    timestamp: str,
    nonce: str,
    ciphertext: str,
    digest: str = "sha1",
) -> str:
    """Hex digest over the sorted (token, timestamp, nonce, ciphertext) tuple."""
    try:
        hash_factory = _DIGESTS[digest]
    except KeyError:
        raise ConfigError(f"Unsupported signature digest: {digest}") from None
    joined = "".join(sorted([token, timestamp, nonce, ciphertext]))
    return hash_factory(joined.encode("utf-8")).hexdigest()


class WebhookCrypto:
    """
    Bound crypto context for one webhook channel.

    Args:
        token: shared verification token
        encoding_aes_key: 43-char base64 key material
        receive_id: corp id expected at the end of every decrypted frame;
            empty string skips the check
        digest: signature digest algorithm ("sha1" or "sha256")
    """

    def __init__(
        self,
        token: str,
        encoding_aes_key: str,
        receive_id: str = "",
        digest: str = "sha1",
    ) -> None:
        if not token:
            raise ConfigError("Webhook token must not be empty")
        if digest not in _DIGESTS:
            raise ConfigError(f"Unsupported signature digest: {digest}")
        self._token = token
        self._key = derive_key(encoding_aes_key)
        self._iv = self._key[:IV_SIZE]
        self._receive_id = receive_id
        self._digest = digest

    def verify_signature(self, signature: str, timestamp: str, nonce: str, ciphertext: str) -> bool:
        expected = compute_signature(self._token, timestamp, nonce, ciphertext, self._digest)
        return hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8"))

    def decrypt_and_verify(self, signature: str, timestamp: str, nonce: str, ciphertext: str) -> str:
        """
        Authenticate and decrypt one payload.

        The signature is checked first; no decryption is attempted when it
        does not match.

        Raises:
            SecurityError: signature mismatch or any decryption/framing failure
        """
        if not self.verify_signature(signature, timestamp, nonce, ciphertext):
            raise SecurityError("Signature verification failed")
        return self.decrypt(ciphertext)

    def decrypt(self, ciphertext: str) -> str:
        try:
            raw = base64.b64decode(ciphertext, validate=True)
        except (ValueError, binascii.Error) as exc:
            raise SecurityError(f"Ciphertext is not valid base64: {exc}") from exc

        if not raw or len(raw) % IV_SIZE != 0:
            raise SecurityError("Ciphertext length is not a multiple of the block size")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(self._iv)).decryptor()
        padded = decryptor.update(raw) + decryptor.finalize()

        unpadder = padding.PKCS7(PAD_BLOCK_BITS).unpadder()
        try:
            framed = unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise SecurityError("Invalid padding in decrypted payload") from exc

        if len(framed) < RANDOM_PREFIX_SIZE + 4:
            raise SecurityError("Decrypted payload too short")

        body = framed[RANDOM_PREFIX_SIZE:]
        (msg_len,) = struct.unpack(">I", body[:4])
        if len(body) < 4 + msg_len:
            raise SecurityError("Declared message length exceeds decrypted data")

        message = body[4:4 + msg_len]
        receive_id = body[4 + msg_len:]
        if self._receive_id and receive_id.decode("utf-8", "replace") != self._receive_id:
            raise SecurityError("Receive id mismatch in decrypted payload")

        try:
            return message.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SecurityError("Decrypted message is not valid UTF-8") from exc

    def encrypt(self, plaintext: str) -> str:
        message = plaintext.encode("utf-8")
        framed = (
            os.urandom(RANDOM_PREFIX_SIZE)
            + struct.pack(">I", len(message))
            + message
            + self._receive_id.encode("utf-8")
        )
        padder = padding.PKCS7(PAD_BLOCK_BITS).padder()
        padded = padder.update(framed) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(self._iv)).encryptor()
        raw = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(raw).decode("ascii")

    def encrypt_and_sign(
        self,
        plaintext: str,
        timestamp: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> EncryptedEnvelope:
        """Inverse of decrypt_and_verify()."""
        timestamp = timestamp or str(int(time.time()))
        nonce = nonce or secrets.token_hex(8)
        ciphertext = self.encrypt(plaintext)
        signature = compute_signature(self._token, timestamp, nonce, ciphertext, self._digest)
        return EncryptedEnvelope(
            ciphertext=ciphertext,
            signature=signature,
            timestamp=timestamp,
            nonce=nonce,
        )

    def build_encrypted_reply(
        self,
        plaintext: str,
        timestamp: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> str:
        """Render the platform's encrypted XML reply envelope."""
        envelope = self.encrypt_and_sign(plaintext, timestamp, nonce)
        return (
            "<xml>"
            f"<Encrypt><![CDATA[{envelope.ciphertext}]]></Encrypt>"
            f"<MsgSignature><![CDATA[{envelope.signature}]]></MsgSignature>"
            f"<TimeStamp>{envelope.timestamp}</TimeStamp>"
            f"<Nonce><![CDATA[{envelope.nonce}]]></Nonce>"
            "</xml>"
        )


# ==================== Functional interface ====================


def decrypt_and_verify(
    signature: str,
    timestamp: str,
    nonce: str,
    ciphertext: str,
    token: str,
    key: str,
    receive_id: str = "",
    digest: str = "sha1",
) -> str:
    """Stateless form of WebhookCrypto.decrypt_and_verify()."""
    return WebhookCrypto(token, key, receive_id, digest).decrypt_and_verify(
        signature, timestamp, nonce, ciphertext
    )


def encrypt_and_sign(
    plaintext: str,
    token: str,
    key: str,
    receive_id: str = "",
    digest: str = "sha1",
    timestamp: Optional[str] = None,
    nonce: Optional[str] = None,
) -> EncryptedEnvelope:
    """Stateless form of WebhookCrypto.encrypt_and_sign()."""
    return WebhookCrypto(token, key, receive_id, digest).encrypt_and_sign(plaintext, timestamp, nonce)


def extract_encrypted(body: str) -> str:
    """
    Pull the encrypted field out of a callback POST body.

    Accepts the XML envelope (``<xml><Encrypt>...</Encrypt></xml>``) and the
    JSON envelope (``{"encrypt": "..."}``).

    Raises:
        ValueError: the body carries no encrypted field
    """
    text = (body or "").strip()
    if not text:
        raise ValueError("Empty callback body")

    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Malformed JSON body: {exc}") from exc
        value = data.get("encrypt") or data.get("Encrypt") if isinstance(data, dict) else None
    else:
        try:
            root = ET.fromstring(text)
        except ET.ParseError as exc:
            raise ValueError(f"Malformed XML body: {exc}") from exc
        value = root.findtext("Encrypt")

    if not isinstance(value, str) or not value.strip():
        raise ValueError("Callback body has no Encrypt field")
    return value.strip()
