"""
Number Sequence database model.

Monotonic counters backing human-readable invoice numbers and settlement
references.
"""

from sqlalchemy import Column, Integer, String
from backend.app.db.session import Base


class NumberSequence(Base):
    """One row per (kind, year) counter, e.g. 'invoice-2026'."""
    __tablename__ = "number_sequences"

    name = Column(String(50), primary_key=True)
    value = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<NumberSequence(name='{self.name}', value={self.value})>"
