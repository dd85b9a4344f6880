"""
Module: reco_kernel.models.reconciliation
Responsibility: ORM persistence for the mutable reconciliation record that
    accompanies each ledger row.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - ``id`` equals the ledger entry id (no separate sequence).
    - Rows are archived through ``delete_date``, never deleted.
    - ``modified_by``/``last_modified`` are written together with every
      partial update (see reco_services.persister).
"""

from datetime import date, datetime

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from reco_kernel.db.base import Base


class ReconciliationModel(Base):
    """
    Reconciliation state of one ledger row.

    Contract:
        Column names match ``reco_kernel.domain.dtos.Reconciliation`` field
        names one for one; the persister relies on that when it writes a
        partial update.
    """

    __tablename__ = "reconciliations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Linkage ids
    invoice_id: Mapped[str | None] = mapped_column(String(64), index=True)
    guarantee_id: Mapped[str | None] = mapped_column(String(64))
    payment_ref: Mapped[str | None] = mapped_column(String(64))
    internal_invoice_reference: Mapped[str | None] = mapped_column(String(64))

    # Business fields (Action/KPI taxonomies are configuration-owned integers)
    action: Mapped[int | None] = mapped_column(Integer)
    action_status: Mapped[bool | None] = mapped_column(Boolean)
    action_date: Mapped[datetime | None]
    kpi: Mapped[int | None] = mapped_column(Integer)
    incident_type: Mapped[int | None] = mapped_column(Integer)
    risky_item: Mapped[bool | None] = mapped_column(Boolean)
    reason_non_risky: Mapped[int | None] = mapped_column(Integer)
    comments: Mapped[str | None] = mapped_column(Text)
    assignee: Mapped[str | None] = mapped_column(String(64))
    to_remind: Mapped[bool | None] = mapped_column(Boolean)
    to_remind_date: Mapped[date | None]
    ack: Mapped[bool | None] = mapped_column(Boolean)
    swift_code: Mapped[str | None] = mapped_column(String(32))

    # Workflow dates
    trigger_date: Mapped[date | None]
    first_claim_date: Mapped[date | None]
    last_claim_date: Mapped[date | None]

    # Audit
    creation_date: Mapped[datetime | None]
    modified_by: Mapped[str | None] = mapped_column(String(64))
    last_modified: Mapped[datetime | None]
    delete_date: Mapped[datetime | None]

    def __repr__(self) -> str:
        return f"<Reconciliation {self.id} action={self.action} kpi={self.kpi}>"
