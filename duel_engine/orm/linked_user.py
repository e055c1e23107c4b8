"""
Linked user ORM model

Maps a platform user (scoped to a server) to an external judge handle and
holds the practice rating that challenges move up and down.
"""
from sqlalchemy import Column, Integer, String, UniqueConstraint, Index

from duel_engine.orm.base import Base, TimestampMixin


class LinkedUser(TimestampMixin, Base):
    __tablename__ = "linked_users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope_id = Column(String(32), nullable=False)
    user_id = Column(String(32), nullable=False)
    handle = Column(String(64), nullable=False)
    rating = Column(Integer, nullable=False, default=1500)

    __table_args__ = (
        UniqueConstraint("scope_id", "user_id", name="uq_linked_user"),
        Index("idx_linked_user_handle", "handle"),
    )

    def __repr__(self):
        return f"<LinkedUser(scope={self.scope_id}, user={self.user_id}, handle={self.handle})>"
