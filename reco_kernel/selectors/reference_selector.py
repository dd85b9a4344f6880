"""
Module: reco_kernel.selectors.reference_selector
Responsibility: Read access to the invoice and guarantee reference catalogs.
Architecture position: Kernel > Selectors.
"""

from dataclasses import fields

from sqlalchemy import select

from reco_kernel.domain.dtos import ReferenceGuarantee, ReferenceInvoice
from reco_kernel.models.reference import ReferenceGuaranteeModel, ReferenceInvoiceModel
from reco_kernel.selectors.base import BaseSelector

_INVOICE_FIELDS = tuple(f.name for f in fields(ReferenceInvoice))
_GUARANTEE_FIELDS = tuple(f.name for f in fields(ReferenceGuarantee))


class ReferenceSelector(BaseSelector):
    """Full reads of the reference catalogs (they are loaded once and cached)."""

    def list_invoices(self) -> list[ReferenceInvoice]:
        stmt = select(ReferenceInvoiceModel).order_by(ReferenceInvoiceModel.invoice_id)
        return [
            ReferenceInvoice(**{name: getattr(m, name) for name in _INVOICE_FIELDS})
            for m in self.session.scalars(stmt)
        ]

    def list_guarantees(self) -> list[ReferenceGuarantee]:
        stmt = select(ReferenceGuaranteeModel).order_by(ReferenceGuaranteeModel.guarantee_id)
        return [
            ReferenceGuarantee(**{name: getattr(m, name) for name in _GUARANTEE_FIELDS})
            for m in self.session.scalars(stmt)
        ]
