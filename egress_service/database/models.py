"""Database models for persisted egress descriptors."""

from typing import Optional

from sqlalchemy import BigInteger, Column, Index, LargeBinary, String, Text
from sqlalchemy.orm import Mapped, declarative_base

Base = declarative_base()


class EgressRecord(Base):
    """
    Latest snapshot of one egress.

    The full descriptor is stored as a serialized ``EgressInfo``; the other
    columns duplicate the fields needed to query without decoding it.
    """
    __tablename__ = "egress_records"

    egress_id: Mapped[str] = Column(String(64), primary_key=True)
    room_name: Mapped[str] = Column(String(255), nullable=False, index=True)
    status: Mapped[str] = Column(String(32), nullable=False, index=True)
    error: Mapped[Optional[str]] = Column(Text, nullable=True)

    # Serialized EgressInfo
    info: Mapped[bytes] = Column(LargeBinary, nullable=False)

    # Unix nanoseconds
    created_at: Mapped[int] = Column(BigInteger, nullable=False)
    updated_at: Mapped[int] = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index('idx_egress_records_room_created', 'room_name', 'created_at'),
    )

    def __repr__(self) -> str:
        return f"<EgressRecord(egress_id='{self.egress_id}', room='{self.room_name}', status='{self.status}')>"
