"""
Module: reco_kernel.models.reference
Responsibility: ORM mapping of the two read-only external reference
    catalogs (invoices and guarantees).
Architecture position: Kernel > Models.  May import from db/base.py only.
"""

from decimal import Decimal

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from reco_kernel.db.base import Base


class ReferenceInvoiceModel(Base):
    """External invoice catalog row, keyed by the invoice (BGI) id."""

    __tablename__ = "reference_invoices"

    invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    payment_reference: Mapped[str | None] = mapped_column(String(64), index=True)
    business_case_reference: Mapped[str | None] = mapped_column(String(64))
    business_case_id: Mapped[str | None] = mapped_column(String(64))
    status: Mapped[str | None] = mapped_column(String(32))
    mt_status: Mapped[str | None] = mapped_column(String(32))
    comm_id_email: Mapped[bool | None] = mapped_column(Boolean)
    payment_method: Mapped[str | None] = mapped_column(String(64))
    billing_amount: Mapped[Decimal | None]
    billing_currency: Mapped[str | None] = mapped_column(String(3))
    debtor_name: Mapped[str | None] = mapped_column(String(255))


class ReferenceGuaranteeModel(Base):
    """External guarantee catalog row, keyed by the guarantee id."""

    __tablename__ = "reference_guarantees"

    guarantee_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    guarantee_type: Mapped[str | None] = mapped_column(String(32))
    status: Mapped[str | None] = mapped_column(String(32))
    outstanding_amount: Mapped[Decimal | None]
    currency: Mapped[str | None] = mapped_column(String(3))
    party_name: Mapped[str | None] = mapped_column(String(255))
