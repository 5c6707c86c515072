"""
SQLAlchemy ORM models for the relational contact directory.

Messages do not live here: they are records in the hosted message store,
see message_store.py. For Pydantic schemas, see schemas.py.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from telecom.storage import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Contact(Base):
    """
    A counterparty in one account's contact list.

    Table: contacts
    Unique: (owner_cell_digits, contact_cell_digits)
    """
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_cell_digits = Column(String, nullable=False, index=True)
    contact_cell_digits = Column(String, nullable=False)
    contact_name = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("owner_cell_digits", "contact_cell_digits", name="uq_contacts_owner_cell_digits"),
    )

    def __repr__(self) -> str:
        return f"<Contact id={self.id} owner={self.owner_cell_digits} cell={self.contact_cell_digits}>"
