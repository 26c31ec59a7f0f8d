# Overview: Service-layer operations for document numbering.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence


def next_document_number(
    *,
    document_type: str,
    prefix: str,
    period: str,
    pad: int = 4,
) -> str:
    """
    Allocate the next document number for a (type, period) pair.

    Must be called inside the caller's write transaction: the UPDATE takes
    the row lock, and a first-of-period insert race is resolved inside a
    SAVEPOINT so the caller's work is not rolled back.
    """
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.document_type == document_type,
            DocumentSequence.period == period,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if not result.rowcount:
        try:
            with db.session.begin_nested():
                db.session.add(
                    DocumentSequence(document_type=document_type, period=period, next_number=2)
                )
            return f"{prefix}-{period}-{1:0{pad}d}"
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise

    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type, period=period)
        .scalar()
    )
    return f"{prefix}-{period}-{current - 1:0{pad}d}"


def next_invoice_number(now: datetime) -> str:
    """Invoice numbers restart daily: INV-YYYYMMDD-NNNN."""
    return next_document_number(
        document_type="INVOICE",
        prefix="INV",
        period=now.strftime("%Y%m%d"),
    )
