from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import settings

TOKEN_IV_BYTES = 12
TOKEN_TAG_BYTES = 16


class IntegrationSecretDecryptError(RuntimeError):
  pass


@dataclass(frozen=True)
class EncryptedToken:
  ciphertext: str
  iv: str
  tag: str
  key_id: str


def _fernet() -> Fernet:
  key = settings.fernet_key
  # accept raw bytes/base64 for ergonomics
  try:
    base64.urlsafe_b64decode(key.encode("utf-8"))
    return Fernet(key.encode("utf-8"))
  except Exception:
    b = base64.urlsafe_b64encode(key.encode("utf-8").ljust(32, b"\0")[:32])
    return Fernet(b)


def encrypt_secret(value: str) -> str:
  return _fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_secret(value: str, *, ttl: int | None = None) -> str:
  return _fernet().decrypt(value.encode("utf-8"), ttl=ttl).decode("utf-8")


def _token_key(key_id: str) -> bytes:
  ring = settings.token_key_ring()
  hex_key = ring.get(key_id)
  if not hex_key:
    raise IntegrationSecretDecryptError(f"Unknown token encryption key id '{key_id}'; reconnect this integration.")
  try:
    key = bytes.fromhex(hex_key)
  except ValueError as exc:
    raise IntegrationSecretDecryptError(f"Token encryption key '{key_id}' is not valid hex.") from exc
  if len(key) != 32:
    raise IntegrationSecretDecryptError(f"Token encryption key '{key_id}' must be 32 bytes (64 hex characters).")
  return key


def encrypt_token(value: str, *, key_id: str | None = None) -> EncryptedToken:
  kid = key_id or settings.token_encryption_active_key_id
  iv = os.urandom(TOKEN_IV_BYTES)
  sealed = AESGCM(_token_key(kid)).encrypt(iv, value.encode("utf-8"), None)
  # AESGCM appends the 16-byte tag; stored separately so rows stay column-compatible.
  ciphertext, tag = sealed[:-TOKEN_TAG_BYTES], sealed[-TOKEN_TAG_BYTES:]
  return EncryptedToken(ciphertext=ciphertext.hex(), iv=iv.hex(), tag=tag.hex(), key_id=kid)


def decrypt_token(*, ciphertext: str, iv: str, tag: str, key_id: str) -> str:
  key = _token_key(key_id)
  try:
    sealed = bytes.fromhex(ciphertext) + bytes.fromhex(tag)
    return AESGCM(key).decrypt(bytes.fromhex(iv), sealed, None).decode("utf-8")
  except (InvalidTag, ValueError) as exc:
    raise IntegrationSecretDecryptError(
      "Integration token cannot be decrypted with the current key; reconnect this integration."
    ) from exc


def decrypt_state_cookie(value: str, *, ttl: int) -> str:
  try:
    return decrypt_secret(value, ttl=ttl)
  except InvalidToken as exc:
    raise IntegrationSecretDecryptError("OAuth state cookie is invalid or expired; start the connection again.") from exc


def api_token_hash(token: str) -> str:
  # Keyed hash so DB leaks don't allow offline token matching.
  key = (settings.app_secret or "").encode("utf-8")
  msg = (token or "").strip().encode("utf-8")
  return hmac.new(key, msg, hashlib.sha256).hexdigest()


def api_token_new() -> str:
  return "tsk_" + secrets.token_urlsafe(32)


def pkce_verifier() -> str:
  return secrets.token_urlsafe(48)


def pkce_challenge(verifier: str) -> str:
  digest = hashlib.sha256(verifier.encode("ascii")).digest()
  return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def constant_time_equal(a: str, b: str) -> bool:
  return secrets.compare_digest((a or "").encode("utf-8"), (b or "").encode("utf-8"))
