"""
Radiopharmaceutical Fulfillment Core
Approval workflow models.

Models:
    - ApprovalWorkflow:  one sequential sign-off process for one entity
    - ApprovalStep:      ordered step definition copied into the instance
    - ApprovalAction:    append-only log of every action taken on a workflow

The workflow points at its subject through an EntityRef (kind + id). This is
a weak, lookup-only reference: the workflow never owns the order or batch.

current_step and status are the only mutable columns on ApprovalWorkflow and
both are reproducible by replaying ApprovalAction rows in id order (see
services/approval_engine.replay).
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from radiopharm.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ENTITY_KINDS = ("order", "batch")

WORKFLOW_STATUSES = {"PENDING", "APPROVED", "REJECTED", "CANCELLED"}

WORKFLOW_TERMINAL_STATUSES = frozenset({"APPROVED", "REJECTED", "CANCELLED"})

# APPROVE / REJECT come from approvers; CANCEL is appended by the state
# machine when the subject is cancelled.
APPROVAL_ACTIONS = {"APPROVE", "REJECT", "CANCEL"}

APPROVER_ACTIONS = frozenset({"APPROVE", "REJECT"})


@dataclass(frozen=True)
class EntityRef:
    """Tagged reference to the subject of a workflow or audit entry."""

    kind: Literal["order", "batch"]
    id: int

    def __post_init__(self):
        if self.kind not in ENTITY_KINDS:
            raise ValueError(f"Unknown entity kind {self.kind!r}")

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.id}"

    def __str__(self) -> str:
        return self.key


class ApprovalWorkflow(db.Model):
    """
    Sequential multi-step approval instance.

    Business rules:
    - current_step starts at 1 and only increases.
    - current_step equals the step count only once status is APPROVED.
    - Once status leaves PENDING the row is frozen.
    - One instance per (entity_type, entity_id, definition_key).
    """

    __tablename__ = "approval_workflows"
    __table_args__ = (
        db.UniqueConstraint(
            "entity_type", "entity_id", "definition_key",
            name="uq_approval_workflow_entity_definition",
        ),
        db.Index("ix_approval_workflow_entity", "entity_type", "entity_id"),
        db.Index("ix_approval_workflow_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic subject reference
    entity_type = db.Column(db.String(20), nullable=False, comment="order | batch")
    entity_id = db.Column(db.String(64), nullable=False)
    definition_key = db.Column(db.String(60), nullable=False, default="review")

    current_step = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(20), nullable=False, default="PENDING")

    requested_by = db.Column(db.String(150), nullable=False, default="system")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False)

    steps = db.relationship(
        "ApprovalStep", back_populates="workflow",
        cascade="all, delete-orphan", order_by="ApprovalStep.step_order",
    )
    actions = db.relationship(
        "ApprovalAction", back_populates="workflow", order_by="ApprovalAction.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def entity_ref(self) -> EntityRef:
        return EntityRef(self.entity_type, int(self.entity_id))

    @property
    def step_count(self) -> int:
        return len(self.steps)

    @property
    def is_terminal(self) -> bool:
        return self.status in WORKFLOW_TERMINAL_STATUSES

    def step(self, step_order: int):
        for s in self.steps:
            if s.step_order == step_order:
                return s
        return None

    def to_dict(self, include_actions: bool = False) -> dict:
        d = {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "definition_key": self.definition_key,
            "current_step": self.current_step,
            "step_count": self.step_count,
            "status": self.status,
            "requested_by": self.requested_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "steps": [s.to_dict() for s in self.steps],
        }
        if include_actions:
            d["actions"] = [a.to_dict() for a in self.actions]
        return d

    def __repr__(self):
        return (
            f"<ApprovalWorkflow #{self.id} {self.entity_type}/{self.entity_id} "
            f"step={self.current_step} [{self.status}]>"
        )


class ApprovalStep(db.Model):
    """One ordered step of a workflow instance."""

    __tablename__ = "approval_steps"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "step_order", name="uq_approval_step_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("approval_workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_order = db.Column(db.Integer, nullable=False)
    step_name = db.Column(db.String(120), nullable=False)
    required_role = db.Column(db.String(60), nullable=False)

    workflow = db.relationship("ApprovalWorkflow", back_populates="steps")

    def to_dict(self) -> dict:
        return {
            "step_order": self.step_order,
            "step_name": self.step_name,
            "required_role": self.required_role,
        }


class ApprovalAction(db.Model):
    """
    Immutable record of one action on a workflow.

    Records are NEVER updated or deleted. actor_role is snapshotted at
    action time so the trail stays meaningful after role changes.
    """

    __tablename__ = "approval_actions"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("approval_workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_order = db.Column(db.Integer, nullable=False)
    actor = db.Column(db.String(150), nullable=False)
    actor_role = db.Column(db.String(60), nullable=True)
    action = db.Column(db.String(20), nullable=False, comment="APPROVE | REJECT | CANCEL")
    comments = db.Column(db.Text, nullable=True)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    workflow = db.relationship("ApprovalWorkflow", back_populates="actions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "step_order": self.step_order,
            "actor": self.actor,
            "actor_role": self.actor_role,
            "action": self.action,
            "comments": self.comments,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<ApprovalAction #{self.id} wf={self.workflow_id} step={self.step_order} {self.action}>"
