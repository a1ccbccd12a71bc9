# Overview: Identity collaborator; storefront accounts and bcrypt password checks.

"""
Account Service

WHY: Every order belongs to exactly one identity, and admin-only actions
(status edits, payment corrections, anomaly review) hinge on the role.

SECURITY NOTES:
- Passwords hashed with bcrypt; cost factor from BCRYPT_ROUNDS (12 default)
- Minimum 8 characters with upper case, lower case and a digit
- Emails are unique and compared lower-cased
- Session tokens are managed separately (see session_service.py)
"""

from __future__ import annotations

import re

import bcrypt
from flask import current_app

from ..errors import ValidationError
from ..extensions import db
from ..models import User
from ..models.auth import ROLE_CUSTOMER, VALID_ROLES
from ..time_utils import utcnow


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class PasswordValidationError(ValidationError):
    """Password does not meet strength requirements."""


def validate_password_strength(password: str) -> None:
    if not isinstance(password, str) or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    """
    Validate strength, then hash with bcrypt.

    WHY configurable rounds: production keeps 12; the test-suite drops to 4
    so fixtures do not dominate the run time.
    """
    validate_password_strength(password)
    rounds = int(current_app.config.get("BCRYPT_ROUNDS", 12))
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Timing-safe bcrypt comparison. Malformed hashes never match."""
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def normalize_email(email: str) -> str:
    if not isinstance(email, str):
        raise ValidationError("email must be a string")
    email = email.strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("email is not a valid address")
    return email


def create_user(
    email: str,
    password: str,
    *,
    role: str = ROLE_CUSTOMER,
    first_name: str | None = None,
    last_name: str | None = None,
) -> User:
    """
    Create an account.

    Raises:
        ValidationError: bad email, unknown role, or email already registered
        PasswordValidationError: weak password
    """
    email = normalize_email(email)
    if role not in VALID_ROLES:
        raise ValidationError(f"role must be one of {', '.join(VALID_ROLES)}")

    if db.session.query(User.id).filter_by(email=email).first() is not None:
        raise ValidationError("An account with this email already exists")

    user = User(
        email=email,
        first_name=first_name,
        last_name=last_name,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    current_app.logger.info("Created %s account %s", role, email)
    return user


def authenticate(email: str, password: str) -> User | None:
    """
    Returns the active user for valid credentials, None otherwise.
    Updates last_login_at on success.
    """
    if not isinstance(email, str) or not isinstance(password, str):
        return None

    user = db.session.query(User).filter(
        User.email == email.strip().lower(),
        User.is_active.is_(True),
    ).first()
    if user is None or not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user
