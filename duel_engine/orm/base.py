"""
duel_engine/orm/base.py
Declarative base shared by all ORM models
"""
from datetime import datetime

from sqlalchemy import Column, DateTime
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class TimestampMixin:
    """
    Common audit columns.
    Lifecycle timestamps that the engine reasons about (started_at, solved_at, ...)
    are stored separately as epoch seconds.
    """

    created_at = Column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
        comment="Timestamp when record was last updated"
    )
