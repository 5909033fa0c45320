"""
SQLAlchemy ORM models for the local message collection.

For Pydantic request/response schemas and client records, see schemas.py.
"""

from sqlalchemy import Column, Integer, String, Text

from phonechat.storage import Base


class MessageRow(Base):
    """
    One stored chat line.

    Table: messages
    Ordering key: (created_at, seq); seq breaks ties between messages
    written within the same timestamp.
    """
    __tablename__ = "messages"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True, index=True)
    text = Column(Text, nullable=False)
    conversation_id = Column(String, nullable=False, index=True)
    created_at = Column(String, nullable=False, index=True)  # Server time ISO-8601
