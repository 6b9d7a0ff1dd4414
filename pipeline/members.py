from __future__ import annotations

import logging

from sqlalchemy import case, func, select

from db.models import Membership
from pipeline.access import require_admin
from pipeline.errors import NotFoundError, Result, ValidationError

logger = logging.getLogger(__name__)

ROLES = ("OWNER", "ADMIN", "MEMBER")

_ROLE_ORDER = case({"OWNER": 0, "ADMIN": 1}, value=Membership.role, else_=2)


def list_members(session, org) -> Result:
    rows = session.execute(
        select(Membership)
        .where(Membership.organization_id == org.id)
        .order_by(_ROLE_ORDER, Membership.created_at)
    ).scalars()
    return Result.success(list(rows))


def _member(session, org, member_id) -> Result:
    member = session.get(Membership, member_id)
    if member is None or member.organization_id != org.id:
        return Result.failure(NotFoundError(code="member_not_found", message="member not found in this organization"))
    return Result.success(member)


def _owner_count(session, org) -> int:
    return session.execute(
        select(func.count()).select_from(Membership).where(
            Membership.organization_id == org.id,
            Membership.role == "OWNER",
        )
    ).scalar_one()


def update_member_role(session, org, user_id: str | None, member_id, role: str) -> Result:
    allowed = require_admin(session, org, user_id)
    if not allowed.ok:
        return allowed
    role = (role or "").strip().upper()
    if role not in ROLES:
        return Result.failure(ValidationError(code="invalid_role", message=f"role must be one of {', '.join(ROLES)}"))
    found = _member(session, org, member_id)
    if not found.ok:
        return found
    member = found.value
    if member.role == "OWNER" and role != "OWNER" and _owner_count(session, org) <= 1:
        return Result.failure(ValidationError(code="last_owner", message="cannot demote the last owner"))

    member.role = role
    session.commit()
    session.refresh(member)
    logger.info("org %s: %s set role of %s to %s", org.slug, user_id, member.user_id, role)
    return Result.success(member)


def remove_member(session, org, user_id: str | None, member_id) -> Result:
    allowed = require_admin(session, org, user_id)
    if not allowed.ok:
        return allowed
    found = _member(session, org, member_id)
    if not found.ok:
        return found
    member = found.value
    if member.role == "OWNER":
        return Result.failure(
            ValidationError(code="cannot_remove_owner", message="transfer ownership before removing the owner")
        )

    removed = member.user_id
    session.delete(member)
    session.commit()
    logger.info("org %s: %s removed member %s", org.slug, user_id, removed)
    return Result.success(removed)
