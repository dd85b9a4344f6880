"""
reco_engines.transaction_types -- Transaction type classification.

Pivot rows carry their type as an integer ``category``; older imports
fall back to label keywords.  Receivable rows take the payment method of
the linked invoice.  The label is not reliable for receivables and is not
parsed for them.
"""

from __future__ import annotations

from enum import Enum


class TransactionType(str, Enum):
    COLLECTION = "COLLECTION"
    PAYMENT = "PAYMENT"
    ADJUSTMENT = "ADJUSTMENT"
    XCL_LOADER = "XCL_LOADER"
    TRIGGER = "TRIGGER"
    MANUAL_OUTGOING = "MANUAL_OUTGOING"
    INCOMING_PAYMENT = "INCOMING_PAYMENT"
    DIRECT_DEBIT = "DIRECT_DEBIT"
    OUTGOING_PAYMENT = "OUTGOING_PAYMENT"
    EXTERNAL_DEBIT_PAYMENT = "EXTERNAL_DEBIT_PAYMENT"
    TO_CATEGORIZE = "TO_CATEGORIZE"

    @property
    def code(self) -> int:
        """Integer stored in the ledger ``category`` column."""
        return _CODES[self]

    @classmethod
    def from_code(cls, code: int) -> TransactionType | None:
        return _BY_CODE.get(code)

    @classmethod
    def parse(cls, value: str | None) -> TransactionType | None:
        if not value or not value.strip():
            return None
        key = value.strip().upper().replace(" ", "_").replace("-", "_")
        try:
            return cls(key)
        except ValueError:
            return None


_CODES: dict[TransactionType, int] = {t: i for i, t in enumerate(TransactionType)}
_BY_CODE: dict[int, TransactionType] = {i: t for t, i in _CODES.items()}

# Checked in order; first keyword found in the upper-cased label wins.
_PIVOT_LABEL_KEYWORDS: tuple[tuple[tuple[str, ...], TransactionType], ...] = (
    (("COLLECTION",), TransactionType.COLLECTION),
    (("AUTOMATIC REFUND", "PAYMENT"), TransactionType.PAYMENT),
    (("ADJUSTMENT",), TransactionType.ADJUSTMENT),
    (("XCL LOADER",), TransactionType.XCL_LOADER),
    (("TRIGGER",), TransactionType.TRIGGER),
)


def classify_transaction_type(
    label: str | None,
    *,
    is_pivot: bool,
    category: int | None = None,
    payment_method: str | None = None,
) -> TransactionType | None:
    """
    Classify one ledger row.

    Returns None for a labelled receivable row whose invoice payment
    method is missing or not a known type.
    """
    if not is_pivot:
        from_invoice = TransactionType.parse(payment_method)
        if from_invoice is not None:
            return from_invoice

    upper_label = (label or "").upper()
    if not upper_label.strip() and category is None:
        return TransactionType.TO_CATEGORIZE
    if "TO CATEGORIZE" in upper_label:
        return TransactionType.TO_CATEGORIZE

    if not is_pivot:
        return None

    if category is not None:
        return TransactionType.from_code(category) or TransactionType.TO_CATEGORIZE

    for keywords, tx_type in _PIVOT_LABEL_KEYWORDS:
        if any(k in upper_label for k in keywords):
            return tx_type
    return TransactionType.TO_CATEGORIZE
