"""
Who paid? Maps sessions and gateway payloads onto local users.

The identity provider owns sign-up; this module only reads the local
users table and never creates accounts.
"""
from typing import Any, Mapping, Optional

from journal_billing.cardcom.notifications import Notification, extract_email
from journal_billing.extensions import db
from journal_billing.models import PaymentSession, User


class IdentityUnresolved(RuntimeError):
    """No local user matches the session or payer email (yet)."""


def _normalize_email(email: Any) -> Optional[str]:
    text = (str(email).strip().lower() if email else "")
    return text if "@" in text else None


def find_user_by_email(email: Any) -> Optional[User]:
    email = _normalize_email(email)
    if not email:
        return None
    return User.query.filter(User.email == email, User.is_active.is_(True)).first()


def extract_payer_email(source: Any, session: Optional[PaymentSession] = None) -> Optional[str]:
    """Payer email from a Notification or raw payload, then from the session."""
    if isinstance(source, Notification):
        email = source.payer_email
    elif isinstance(source, Mapping):
        email = extract_email(source)
    else:
        email = None
    if not email and session is not None:
        email = session.payer_email
    return _normalize_email(email)


def resolve_session_user(
    session: Optional[PaymentSession],
    notification: Optional[Notification] = None,
    required: bool = False,
) -> Optional[User]:
    """
    Session owner first, then the payer email. Links the session to the
    user when found by email (caller commits).
    """
    user = None
    if session is not None and session.user_id:
        user = db.session.get(User, session.user_id)
    if user is None:
        user = find_user_by_email(extract_payer_email(notification, session))
        if user is not None and session is not None and session.user_id is None:
            session.user_id = user.id
    if user is None and required:
        ref = session.reference if session is not None else None
        raise IdentityUnresolved(f"no user for session {ref!r}")
    return user
