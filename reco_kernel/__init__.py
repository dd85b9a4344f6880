"""
Reconciliation Kernel

The storage-facing core of the ledger reconciliation view:
- Explicit ORM mapping for ledger, reconciliation and reference tables
- Plain value objects shared by engines and services
- Structured JSON logging and a typed exception hierarchy
- Read-only selectors and the change-log journal
"""

__version__ = "0.1.0"
