"""
Radiopharmaceutical Fulfillment Core
Actor → role mapping used by the role resolver.

Authentication itself lives outside the core; this table only answers
"which role does this caller act in" for guard checks.
"""

from datetime import datetime, timezone

from radiopharm.models import db

KNOWN_ROLES = {"ADMIN", "PRODUCTION", "QC", "QP", "LOGISTICS", "SALES"}


class ActorRole(db.Model):
    __tablename__ = "actor_roles"

    id = db.Column(db.Integer, primary_key=True)
    actor = db.Column(db.String(150), nullable=False, unique=True, index=True)
    role = db.Column(db.String(60), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor": self.actor,
            "role": self.role,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<ActorRole {self.actor}={self.role}>"
