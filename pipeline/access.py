from __future__ import annotations

from sqlalchemy import select

from db.models import Membership, Organization
from pipeline.errors import AccessDeniedError, NotFoundError, Result


def check_organization_access(session, user_id: str | None, slug: str) -> Result:
    """The user may act on an organization only through a membership row."""
    org = session.execute(select(Organization).where(Organization.slug == slug)).scalar_one_or_none()
    if org is None:
        return Result.failure(NotFoundError(code="organization_not_found", message=f"unknown organization: {slug}"))
    if not user_id:
        return Result.failure(AccessDeniedError(code="forbidden", message="authentication required"))
    if membership_for(session, org.id, user_id) is None:
        return Result.failure(AccessDeniedError(code="forbidden", message="not a member of this organization"))
    return Result.success(org)


ADMIN_ROLES = ("OWNER", "ADMIN")


def membership_for(session, organization_id, user_id: str | None) -> Membership | None:
    if not user_id:
        return None
    return session.execute(
        select(Membership).where(
            Membership.organization_id == organization_id,
            Membership.user_id == user_id,
        )
    ).scalar_one_or_none()


def require_admin(session, org, user_id: str | None) -> Result:
    """Owners and admins manage members; plain members only read."""
    membership = membership_for(session, org.id, user_id)
    if membership is None or membership.role not in ADMIN_ROLES:
        return Result.failure(AccessDeniedError(code="admin_required", message="only admins can manage members"))
    return Result.success(membership)
