"""
Module: reco_kernel.models.ledger
Responsibility: ORM persistence for imported ledger rows.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Ledger rows are owned by the import pipeline.  This kernel only reads
      them; archiving is expressed by ``delete_date``.
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from reco_kernel.db.base import Base


class LedgerEntryModel(Base):
    """
    One imported accounting movement line.

    Contract:
        ``id`` is the import pipeline's identifier and is shared 1:1 with the
        reconciliation record of the row.

    Non-goals:
        No mutation API.  The import pipeline writes this table.
    """

    __tablename__ = "ledger_entries"

    __table_args__ = (
        Index("idx_ledger_country_account", "country_id", "account_id"),
        Index("idx_ledger_event_num", "country_id", "event_num"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    country_id: Mapped[str] = mapped_column(String(16), nullable=False)

    account_id: Mapped[str] = mapped_column(String(64), nullable=False)

    currency: Mapped[str | None] = mapped_column(String(3))

    signed_amount: Mapped[Decimal] = mapped_column(nullable=False)

    operation_date: Mapped[date | None]

    value_date: Mapped[date | None]

    raw_label: Mapped[str | None] = mapped_column(String(512))

    # TransactionType code for pivot rows
    category: Mapped[int | None] = mapped_column(Integer)

    event_num: Mapped[str | None] = mapped_column(String(64))

    reconciliation_num: Mapped[str | None] = mapped_column(String(128))

    reconciliation_origin_num: Mapped[str | None] = mapped_column(String(128))

    receivable_invoice_ref: Mapped[str | None] = mapped_column(String(64))

    receivable_dw_ref: Mapped[str | None] = mapped_column(String(128))

    creation_date: Mapped[datetime | None]

    delete_date: Mapped[datetime | None]

    def __repr__(self) -> str:
        return f"<LedgerEntry {self.id} {self.account_id} {self.signed_amount}>"
