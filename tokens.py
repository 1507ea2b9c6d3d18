# ─── tokens.py ─────────────────────────────────────────────────────
# Signed license / recovery tokens for the device-licensing app.
#
#   base64url(header) . base64url(payload) . base64url(ed25519 signature)
#
# header  = {"alg":"Ed25519","kid":"v1"}
# payload = {"v":1,"type":...,"did":...,"iat":...,["mode"],["exp"],["note"]}

import base64
import binascii
import json
from datetime import datetime, timedelta, timezone

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from errors import ConfigurationError

HEADER = {"alg": "Ed25519", "kid": "v1"}
LICENSE_MODES = ("permanent", "periodic")

NO_KEY_MSG = ("No private key provided. Set TOKEN_PRIVATE_KEY in the "
              "environment or pass it explicitly.")
BAD_KEY_MSG = ("Ed25519 private key must be 64 bytes (seed+public), "
               "base64-url or base64 acceptable.")


def b64u_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64u_decode(text: str) -> bytes:
    text = text.strip().replace("+", "-").replace("/", "_")
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _iso(dt: datetime) -> str:
    """2025-01-31T10:00:00.123Z"""
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_b64(obj: dict) -> str:
    return b64u_encode(json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


class TokenIssuer:
    """Builds and signs tokens; the key is only read when signing."""

    def __init__(self, private_key: str | None):
        self._private_key = private_key

    def _signing_key(self) -> SigningKey:
        if not self._private_key:
            raise ConfigurationError(NO_KEY_MSG)
        try:
            sk = b64u_decode(self._private_key)
        except (binascii.Error, ValueError):
            raise ConfigurationError(BAD_KEY_MSG) from None
        if len(sk) != 64:
            raise ConfigurationError(BAD_KEY_MSG)
        return SigningKey(sk[:32])

    def _sign(self, payload: dict) -> str:
        key = self._signing_key()
        head = f"{_json_b64(HEADER)}.{_json_b64(payload)}"
        signature = key.sign(head.encode("utf-8")).signature
        return f"{head}.{b64u_encode(signature)}"

    def issue_license(self, device_id: str, mode: str, days: int | None = None,
                      note: str | None = None) -> str:
        if mode not in LICENSE_MODES:
            raise ValueError("License mode must be 'permanent' or 'periodic'")
        if mode == "periodic" and not days:
            raise ValueError("Periodic license requires days")
        now = datetime.now(timezone.utc)
        payload = {"v": 1, "type": "license", "did": device_id,
                   "iat": _iso(now), "mode": mode}
        if mode == "periodic":
            payload["exp"] = _iso(now + timedelta(days=int(days)))
        if note:
            payload["note"] = note
        return self._sign(payload)

    def issue_recovery(self, device_id: str, minutes: int, note: str | None = None) -> str:
        now = datetime.now(timezone.utc)
        payload = {"v": 1, "type": "recovery", "did": device_id,
                   "iat": _iso(now), "exp": _iso(now + timedelta(minutes=int(minutes)))}
        if note:
            payload["note"] = note
        return self._sign(payload)

    def public_key(self) -> str:
        return b64u_encode(bytes(self._signing_key().verify_key))

    @staticmethod
    def decode(token: str) -> dict:
        """{header, payload, signature}; the signature is not checked."""
        parts = token.split(".")
        if len(parts) != 3:
            raise ValueError("Failed to decode token: invalid token format")
        try:
            header = json.loads(b64u_decode(parts[0]))
            payload = json.loads(b64u_decode(parts[1]))
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Failed to decode token: {e}") from None
        return {"header": header, "payload": payload, "signature": parts[2]}

    @staticmethod
    def verify(token: str, public_key: str) -> bool:
        parts = token.split(".")
        if len(parts) != 3:
            return False
        try:
            key = VerifyKey(b64u_decode(public_key))
            key.verify(f"{parts[0]}.{parts[1]}".encode("utf-8"), b64u_decode(parts[2]))
        except (BadSignatureError, binascii.Error, ValueError):
            return False
        return True
