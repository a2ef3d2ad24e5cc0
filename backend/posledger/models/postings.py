from __future__ import annotations

from ..extensions import db
from posledger.time_utils import to_utc_z

class PostingEvent(db.Model):
    """
    Saga header: one row per logical money-moving event.

    WHY: The cash ledger, vendor ledger and audit trail are written as
    separate steps. This row keys them together by idempotency_key so a retry
    resumes instead of double-posting, and so the reconciliation job can find
    events that never reached DONE.
    """
    __tablename__ = "posting_events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    idempotency_key = db.Column(db.String(64), nullable=False, unique=True)
    kind = db.Column(db.String(32), nullable=False, index=True)

    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    # Last state reached: RECEIVED, PRORATED, LEDGER_WRITTEN, VENDOR_POSTED, AUDITED, DONE, FAILED
    state = db.Column(db.String(16), nullable=False, default="RECEIVED", index=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    # sha256 of the normalized request; a reused key with a different request is rejected
    request_hash = db.Column(db.String(64), nullable=True)

    # PricingRules.to_dict() in force when the event was first received; replays reuse it
    pricing_rules = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "idempotency_key": self.idempotency_key,
            "kind": self.kind,
            "business_id": self.business_id,
            "branch_id": self.branch_id,
            "state": self.state,
            "failure_reason": self.failure_reason,
            "request_hash": self.request_hash,
            "pricing_rules": self.pricing_rules,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

class PostingStep(db.Model):
    """
    Completed saga step. Committed in the same DB transaction as the row it
    wrote, so "step recorded" and "entry exists" never disagree.
    """
    __tablename__ = "posting_steps"
    __table_args__ = (
        db.UniqueConstraint("idempotency_key", "step", name="uq_posting_steps_key_step"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    idempotency_key = db.Column(
        db.String(64), db.ForeignKey("posting_events.idempotency_key"), nullable=False, index=True
    )
    step = db.Column(db.String(64), nullable=False)

    # cash, vendor, audit, receipt
    stream = db.Column(db.String(16), nullable=False)
    entry_id = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    event = db.relationship("PostingEvent", backref=db.backref("steps", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "idempotency_key": self.idempotency_key,
            "step": self.step,
            "stream": self.stream,
            "entry_id": self.entry_id,
            "created_at": to_utc_z(self.created_at),
        }
