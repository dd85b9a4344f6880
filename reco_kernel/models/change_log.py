"""
Module: reco_kernel.models.change_log
Responsibility: ORM persistence for the append-only change journal consumed
    by the sync side (replay of inserts and partial updates).
Architecture position: Kernel > Models.  May import from db/base.py only.
"""

from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from reco_kernel.db.base import Base


class ChangeLogEntryModel(Base):
    """
    One journaled write.

    ``operation`` holds the change descriptor wire form
    (``INSERT`` or ``UPDATE(col1,col2,...)``).  NOOP saves are never
    journaled.
    """

    __tablename__ = "change_log"

    __table_args__ = (
        Index("idx_change_log_pending", "country_id", "synchronized"),
    )

    # Integer (not BigInteger) so SQLite assigns rowid autoincrement.
    change_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    country_id: Mapped[str] = mapped_column(String(16), nullable=False)
    table_name: Mapped[str] = mapped_column(String(64), nullable=False)
    record_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(1024), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    synchronized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
