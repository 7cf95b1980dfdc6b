"""
Actor → role resolution for approval guard checks.

The core never reads a session or a global "current user": callers pass the
actor identity explicitly and this module maps it to a role.
"""

import logging

from radiopharm.core.exceptions import ValidationError
from radiopharm.models import db
from radiopharm.models.auth import KNOWN_ROLES, ActorRole

logger = logging.getLogger(__name__)


def resolve_role(actor: str) -> str | None:
    """Return the active role for *actor*, or None when unknown/inactive."""
    if not actor:
        return None
    row = db.session.execute(
        db.select(ActorRole).where(ActorRole.actor == actor, ActorRole.is_active.is_(True))
    ).scalar_one_or_none()
    return row.role if row else None


def set_role(actor: str, role: str) -> ActorRole:
    """Create or update the role mapping for *actor*. Commits."""
    actor = (actor or "").strip()
    role = (role or "").strip().upper()
    if not actor:
        raise ValidationError("actor is required", details={"actor": "required"})
    if role not in KNOWN_ROLES:
        raise ValidationError(
            f"role must be one of {sorted(KNOWN_ROLES)}", details={"role": role},
        )
    row = db.session.execute(
        db.select(ActorRole).where(ActorRole.actor == actor)
    ).scalar_one_or_none()
    if row is None:
        row = ActorRole(actor=actor, role=role)
        db.session.add(row)
    else:
        row.role = role
        row.is_active = True
    db.session.commit()
    logger.info("Role assigned", extra={"event_type": "role.assign", "actor": actor})
    return row
