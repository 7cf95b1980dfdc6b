"""
Radiopharmaceutical Fulfillment Core
Audit domain model.

Models:
    - AuditEntry: immutable, append-only evidence of every state change.

The journey / timeline views render these rows; the core never reads them
back to make a decision.
"""

import json
from datetime import UTC, datetime

from radiopharm.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"order", "batch", "workflow", "capacity", "qc_item"}

AUDIT_ACTIONS = {
    # Lifecycle
    "order.transition",
    "batch.transition",
    "order.create",
    "order.assign_batch",
    "batch.create",
    "batch.material_lot",
    "qc_item.update",
    # Approval
    "workflow.start",
    "workflow.approve",
    "workflow.reject",
    "workflow.cancel",
    # Capacity
    "capacity.reserve",
    "capacity.commit",
    "capacity.release",
    "capacity.override",
    "capacity.configure",
}


class AuditEntry(db.Model):
    """
    One row per state change.

    ``from_status`` / ``to_status`` are filled for lifecycle transitions;
    ``diff_json`` carries any extra payload (reservation ids, minutes, ...).
    """

    __tablename__ = "audit_entries"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="order | batch | workflow | capacity | qc_item",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    # What happened
    action = db.Column(db.String(60), nullable=False, comment="order.transition | capacity.override | …")
    from_status = db.Column(db.String(20), nullable=True)
    to_status = db.Column(db.String(20), nullable=True)
    actor = db.Column(db.String(150), nullable=False, default="system")

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditEntry {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    from_status: str | None = None,
    to_status: str | None = None,
    diff: dict | None = None,
) -> AuditEntry:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control: the row commits or rolls back with the change it
    describes.

    Returns the (flushed) AuditEntry instance.
    """
    entry = AuditEntry(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        from_status=from_status,
        to_status=to_status,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(entry)
    db.session.flush()
    return entry
