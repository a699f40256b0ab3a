from __future__ import annotations

import pytest

from app.config import settings
from app.security import (
  IntegrationSecretDecryptError,
  decrypt_state_cookie,
  decrypt_token,
  encrypt_secret,
  encrypt_token,
  pkce_challenge,
)

KEY_A = "a1" * 32
KEY_B = "b2" * 32


@pytest.mark.anyio
async def test_token_round_trip_records_key_id(monkeypatch) -> None:
  monkeypatch.setattr(settings, "token_encryption_keys", f"k1:{KEY_A}")
  monkeypatch.setattr(settings, "token_encryption_active_key_id", "k1")

  sealed = encrypt_token("ya29.access")
  assert sealed.key_id == "k1"
  assert len(bytes.fromhex(sealed.iv)) == 12
  assert len(bytes.fromhex(sealed.tag)) == 16
  assert "ya29" not in sealed.ciphertext
  assert decrypt_token(ciphertext=sealed.ciphertext, iv=sealed.iv, tag=sealed.tag, key_id=sealed.key_id) == "ya29.access"


@pytest.mark.anyio
async def test_rotated_ring_still_decrypts_old_key_id(monkeypatch) -> None:
  monkeypatch.setattr(settings, "token_encryption_keys", f"k1:{KEY_A}")
  monkeypatch.setattr(settings, "token_encryption_active_key_id", "k1")
  sealed = encrypt_token("refresh-me")

  monkeypatch.setattr(settings, "token_encryption_keys", f"k2:{KEY_B},k1:{KEY_A}")
  monkeypatch.setattr(settings, "token_encryption_active_key_id", "k2")
  assert encrypt_token("fresh").key_id == "k2"
  assert decrypt_token(ciphertext=sealed.ciphertext, iv=sealed.iv, tag=sealed.tag, key_id="k1") == "refresh-me"


@pytest.mark.anyio
async def test_tampered_or_unknown_key_cannot_be_decrypted(monkeypatch) -> None:
  monkeypatch.setattr(settings, "token_encryption_keys", f"k1:{KEY_A}")
  monkeypatch.setattr(settings, "token_encryption_active_key_id", "k1")
  sealed = encrypt_token("secret")

  flipped = ("0" if sealed.tag[0] != "0" else "1") + sealed.tag[1:]
  with pytest.raises(IntegrationSecretDecryptError, match="cannot be decrypted"):
    decrypt_token(ciphertext=sealed.ciphertext, iv=sealed.iv, tag=flipped, key_id="k1")

  with pytest.raises(IntegrationSecretDecryptError, match="Unknown token encryption key"):
    decrypt_token(ciphertext=sealed.ciphertext, iv=sealed.iv, tag=sealed.tag, key_id="gone")


@pytest.mark.anyio
async def test_state_cookie_rejects_garbage() -> None:
  assert decrypt_state_cookie(encrypt_secret("payload"), ttl=60) == "payload"
  with pytest.raises(IntegrationSecretDecryptError):
    decrypt_state_cookie("not-a-fernet-token", ttl=60)


@pytest.mark.anyio
async def test_pkce_challenge_matches_rfc_example() -> None:
  # RFC 7636 appendix B.
  assert pkce_challenge("dBjftJeZ4CVP-1i0zO3w1xYNSkQ3VmoThGJxsIVBgRA") == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
