from __future__ import annotations

from ..extensions import db


class DocumentSequence(db.Model):
    """
    Atomic document sequences, one row per (document_type, period).

    WHY: Prevent race conditions when generating invoice numbers; the
    period column lets invoice numbers restart daily (INV-YYYYMMDD-NNNN).
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", "period", name="uq_doc_sequences_type_period"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, index=True)
    period = db.Column(db.String(16), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
