"""
Runtime State Snapshot ORM Model

Key-value table holding the serialized runtime document. One row per
state key; every persist overwrites the row (last writer wins).
"""

from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func

from backend.db.base import Base


class RuntimeStateSnapshot(Base):
    """
    Runtime State Snapshot Model

    Stores the whole control-plane document as JSON text under a key.
    """
    __tablename__ = "runtime_state_snapshots"
    __table_args__ = {"extend_existing": True}

    key = Column(String(128), primary_key=True)
    payload = Column(Text, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<RuntimeStateSnapshot {self.key}>"
