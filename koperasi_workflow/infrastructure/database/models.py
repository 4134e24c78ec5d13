"""SQLAlchemy ORM models for cooperative applications"""

from sqlalchemy import Column, String, Integer, DateTime, JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class ApplicationRecord(Base):
    """
    One cooperative application of any kind.

    The full application lives in ``document``; the workflow columns are
    copied out of it so queues can be filtered and the compare-and-set can
    be expressed as a plain conditional UPDATE.
    """

    __tablename__ = "cooperative_application"

    id = Column(String(36), primary_key=True)
    kind = Column(String(16), nullable=False, index=True)
    number = Column(String(32), nullable=False, unique=True)
    applicant_id = Column(String(64), nullable=False, index=True)
    status = Column(String(40), nullable=False, index=True)
    current_step = Column(String(32), nullable=True, index=True)
    version = Column(Integer, nullable=False, default=1)
    document = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
