"""Email/password identities and signed session tokens.

Credentials live in the ``credentials`` table, hashed with salted PBKDF2.
A session token is ``<base64 payload>.<base64 HMAC-SHA256>``, so any process
holding ``SESSION_SIGNING_SECRET`` can verify it. Logged-out tokens are kept
in a revocation list until they would have expired anyway.

Listeners registered with :func:`subscribe` are called with the identity on
every sign-in and with ``None`` on sign-out.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
import time
from collections.abc import Callable
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from lab_lending.models.lending_models import Credential, new_document_id
from lab_lending.services.errors import AuthenticationError, ValidationError
from lab_lending.services.unit_of_work import commit_or_raise


SESSION_TTL_SECONDS = 60 * 60 * 12
MIN_PASSWORD_LENGTH = 6
AUTH_LOGGER = logging.getLogger("lab_lending.auth")

_LOCK = threading.Lock()
_REVOKED_TOKENS: dict[str, float] = {}
_LISTENERS: list[Callable[[dict[str, Any] | None], None]] = []


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def _normalize_email(raw_email: str | None) -> str:
    email = (raw_email or "").strip().lower()
    local, _, domain = email.partition("@")
    if not local or "." not in domain:
        raise ValidationError("Enter a valid email address.")
    return email


def _identity(credential: Credential) -> dict[str, Any]:
    return {"uid": credential.UserID, "email": credential.Email}


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(encoded: str) -> bytes:
    return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))


def subscribe(callback: Callable[[dict[str, Any] | None], None]) -> Callable[[], None]:
    with _LOCK:
        _LISTENERS.append(callback)

    def unsubscribe() -> None:
        with _LOCK:
            if callback in _LISTENERS:
                _LISTENERS.remove(callback)

    return unsubscribe


def _notify(identity: dict[str, Any] | None) -> None:
    with _LOCK:
        listeners = list(_LISTENERS)
    for listener in listeners:
        try:
            listener(dict(identity) if identity else None)
        except Exception:
            AUTH_LOGGER.exception("Auth listener %r failed", listener)


def register(db: Session, email: str, password: str) -> dict[str, Any]:
    normalized = _normalize_email(email)
    if len((password or "").strip()) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    existing = db.execute(select(Credential).where(Credential.Email == normalized)).scalars().first()
    if existing:
        raise ValidationError("An account with this email already exists.")

    salt = secrets.token_hex(16)
    credential = Credential(
        UserID=new_document_id(),
        Email=normalized,
        PasswordSalt=salt,
        PasswordHash=_password_hash(password, salt),
        PasswordUpdatedAt=int(time.time()),
    )
    db.add(credential)
    commit_or_raise(db)
    AUTH_LOGGER.info("Registered uid=%s", credential.UserID)
    return _identity(credential)


def authenticate(db: Session, email: str, password: str) -> dict[str, Any]:
    normalized = (email or "").strip().lower()
    credential = db.execute(select(Credential).where(Credential.Email == normalized)).scalars().first()
    if credential is None:
        raise AuthenticationError("Invalid credentials.")
    candidate = _password_hash(password, credential.PasswordSalt)
    if not hmac.compare_digest(candidate, credential.PasswordHash):
        raise AuthenticationError("Invalid credentials.")
    return _identity(credential)


def create_session(payload: dict[str, Any]) -> str:
    session_payload = dict(payload)
    session_payload["expiresAt"] = time.time() + SESSION_TTL_SECONDS
    session_payload["nonce"] = secrets.token_hex(8)
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    signature = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
    return f"{encoded}.{_b64encode(signature)}"


def start_session(identity: dict[str, Any]) -> str:
    token = create_session(identity)
    _notify(identity)
    return token


def login(db: Session, email: str, password: str) -> tuple[dict[str, Any], str]:
    identity = authenticate(db, email, password)
    return identity, start_session(identity)


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _b64decode(encoded_sig)):
            return None
        decoded = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None
    if not isinstance(decoded, dict):
        return None

    now = time.time()
    if now >= float(decoded.get("expiresAt") or 0.0):
        return None
    with _LOCK:
        for revoked_token, revoked_exp in list(_REVOKED_TOKENS.items()):
            if now >= revoked_exp:
                _REVOKED_TOKENS.pop(revoked_token, None)
        if token in _REVOKED_TOKENS:
            return None
    return {"uid": decoded.get("uid"), "email": decoded.get("email")}


def logout(token: str | None) -> None:
    if not token:
        return
    identity = get_session(token)
    if identity is None:
        return
    try:
        decoded = json.loads(_b64decode(token.split(".", 1)[0]).decode("utf-8"))
        expires_at = float(decoded.get("expiresAt") or 0.0)
    except (ValueError, UnicodeError):
        expires_at = time.time() + SESSION_TTL_SECONDS
    with _LOCK:
        _REVOKED_TOKENS[token] = expires_at
    AUTH_LOGGER.info("Logged out uid=%s", identity.get("uid"))
    _notify(None)
