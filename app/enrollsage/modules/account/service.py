from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from werkzeug.security import check_password_hash, generate_password_hash

from app.enrollsage.audit import record_event
from app.enrollsage.auth import revoke_sessions
from app.enrollsage.models import Address, OAuthAccount, User
from app.enrollsage.security import password_problems

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

ADDRESS_REQUIRED = {"name": "Name", "line1": "Street address", "city": "City", "state": "State", "postal_code": "ZIP code"}


class AccountError(ValueError):
    pass


def validate_address_payload(payload: dict) -> list[str]:
    return [f"{label} is required." for key, label in ADDRESS_REQUIRED.items() if not (payload.get(key) or "").strip()]


def add_address(s: "Session", user: User, payload: dict) -> Address:
    """The first address, or one flagged default, becomes the default."""
    make_default = bool(payload.get("is_default")) or not user.addresses
    if make_default:
        for other in user.addresses:
            other.is_default = False
    address = Address(
        user_id=user.id,
        name=payload["name"].strip(),
        line1=payload["line1"].strip(),
        line2=(payload.get("line2") or "").strip() or None,
        city=payload["city"].strip(),
        state=payload["state"].strip(),
        postal_code=payload["postal_code"].strip(),
        country=((payload.get("country") or "").strip() or "US")[:2].upper(),
        is_default=make_default,
    )
    s.add(address)
    user.addresses.append(address)
    s.flush()
    record_event(s, actor=user, action="address.add", entity_type="Address", entity_id=str(address.id))
    return address


def set_default_address(s: "Session", user: User, address: Address) -> Address:
    if address.user_id != user.id:
        raise AccountError("Address not found.")
    for other in user.addresses:
        other.is_default = other.id == address.id
    return address


def delete_address(s: "Session", user: User, address: Address) -> None:
    if address.user_id != user.id:
        raise AccountError("Address not found.")
    was_default = address.is_default
    user.addresses.remove(address)
    s.delete(address)
    s.flush()
    if was_default and user.addresses:
        user.addresses[0].is_default = True
    record_event(s, actor=user, action="address.delete", entity_type="Address", entity_id=str(address.id))


def update_profile(s: "Session", user: User, payload: dict) -> User:
    first = (payload.get("first_name") or "").strip()
    if not first:
        raise AccountError("First name is required.")
    user.first_name = first
    user.last_name = (payload.get("last_name") or "").strip() or None
    user.phone = (payload.get("phone") or "").strip() or None
    user.marketing_consent = bool(payload.get("marketing_consent"))
    user.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="user.profile_update", entity_type="User", entity_id=str(user.id))
    return user


def change_password(
    s: "Session", user: User, *, current: str, new: str, confirm: str, keep_session_id: str | None
) -> int:
    """Returns the number of other sessions revoked."""
    if user.password_hash and not check_password_hash(user.password_hash, current or ""):
        raise AccountError("Current password is incorrect.")
    problems = password_problems(new, confirm)
    if problems:
        raise AccountError(" ".join(problems))
    user.password_hash = generate_password_hash(new)
    user.updated_at = datetime.utcnow()
    revoked = revoke_sessions(s, user, keep_id=keep_session_id)
    record_event(
        s,
        actor=user,
        action="user.password_change",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"sessions_revoked": revoked},
    )
    return revoked


def unlink_google(s: "Session", user: User) -> None:
    accounts = [a for a in user.oauth_accounts if a.provider == "google"]
    if not accounts:
        raise AccountError("No Google account is linked.")
    if not user.password_hash:
        raise AccountError("Set a password before unlinking Google, or you will be locked out.")
    for account in accounts:
        user.oauth_accounts.remove(account)
        s.delete(account)
    record_event(s, actor=user, action="user.google_unlink", entity_type="User", entity_id=str(user.id))


def google_linked(user: User) -> OAuthAccount | None:
    return next((a for a in user.oauth_accounts if a.provider == "google"), None)
