from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from lab_lending.models.lending_models import UserProfile
from lab_lending.services.errors import NotFoundError, ValidationError
from lab_lending.services.unit_of_work import commit_or_raise


ROLE_STUDENT = "student"
ROLE_ADMIN = "admin"
ROLES = {ROLE_STUDENT, ROLE_ADMIN}
ADMIN_DISPLAY_NAME = "Administrador"

# Legacy rule: emails starting with this prefix are admins. Empty disables it.
ADMIN_EMAIL_PREFIX = os.environ.get("ADMIN_EMAIL_PREFIX", "admin").strip().lower()

PROFILE_FIELDS = {
    "email": "Email",
    "displayName": "DisplayName",
    "phone": "Phone",
    "role": "Role",
}
PROFILE_LOGGER = logging.getLogger("lab_lending.auth")


def _normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip().lower()
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {raw_role!r}.")
    return role


def is_admin_email(email: str | None) -> bool:
    if not ADMIN_EMAIL_PREFIX:
        return False
    return (email or "").strip().lower().startswith(ADMIN_EMAIL_PREFIX)


def role_for_signup(email: str | None) -> str:
    return ROLE_ADMIN if is_admin_email(email) else ROLE_STUDENT


def serialize_profile(profile: UserProfile) -> dict:
    return {
        "id": profile.UserID,
        "email": profile.Email,
        "displayName": profile.DisplayName,
        "phone": profile.Phone,
        "role": profile.Role,
        "createdAt": profile.CreatedDate,
        "updatedAt": profile.UpdatedDate,
    }


def create_or_update_profile(db: Session, user_id: str, data: dict[str, Any]) -> dict:
    fields = {key: data[key] for key in PROFILE_FIELDS if key in data}
    if "role" in fields:
        fields["role"] = _normalize_role(fields["role"])

    now = datetime.now()
    profile = db.get(UserProfile, user_id)
    if profile is None:
        if not fields.get("email"):
            raise ValidationError("A new profile needs an email.")
        profile = UserProfile(UserID=user_id, Role=ROLE_STUDENT, CreatedDate=now)
        db.add(profile)
    for field, value in fields.items():
        setattr(profile, PROFILE_FIELDS[field], value)
    profile.UpdatedDate = now
    commit_or_raise(db)
    return serialize_profile(profile)


def ensure_profile(
    db: Session,
    user_id: str,
    email: str,
    display_name: str | None = None,
    phone: str | None = None,
) -> dict:
    data: dict[str, Any] = {"email": email}
    if display_name is not None:
        data["displayName"] = display_name
    if phone is not None:
        data["phone"] = phone
    if db.get(UserProfile, user_id) is None:
        data["role"] = role_for_signup(email)
    return create_or_update_profile(db, user_id, data)


def sync_profile_on_login(db: Session, identity: dict[str, Any]) -> dict:
    """Make sure a signed-in identity has a profile.

    Accounts matching the admin email prefix are re-synced to the admin role
    on every login. Everyone else only gets a student profile the first time.
    """
    user_id = identity["uid"]
    email = identity.get("email") or ""
    if is_admin_email(email):
        return create_or_update_profile(
            db,
            user_id,
            {"email": email, "displayName": ADMIN_DISPLAY_NAME, "role": ROLE_ADMIN},
        )
    profile = db.get(UserProfile, user_id)
    if profile is not None:
        return serialize_profile(profile)
    return create_or_update_profile(db, user_id, {"email": email, "displayName": "", "role": ROLE_STUDENT})


def get_profile(db: Session, user_id: str) -> dict | None:
    profile = db.get(UserProfile, user_id)
    return serialize_profile(profile) if profile else None


def set_role(db: Session, user_id: str, role: str) -> dict:
    normalized = _normalize_role(role)
    profile = db.get(UserProfile, user_id)
    if profile is None:
        raise NotFoundError("User not found.")
    profile.Role = normalized
    profile.UpdatedDate = datetime.now()
    commit_or_raise(db)
    PROFILE_LOGGER.info("Role changed uid=%s role=%s", user_id, normalized)
    return serialize_profile(profile)
