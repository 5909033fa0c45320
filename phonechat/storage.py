import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy import create_engine, and_, or_
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.pool import StaticPool

from phonechat.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False lets the SQLite connection be used from the event
# loop thread and from worker threads; in-memory databases need a single
# shared connection
_engine_kwargs = {"connect_args": {"check_same_thread": False}, "echo": False}
if ":memory:" in settings.DATABASE_URL:
    _engine_kwargs["poolclass"] = StaticPool

engine = create_engine(settings.DATABASE_URL, **_engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# (created_at, seq) of the oldest message held by a reader
SqlCursor = Tuple[str, int]

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called when a SQL message collection is created.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from phonechat.models import MessageRow

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def encode_timestamp(value: datetime) -> str:
    """Fixed-width UTC text so that lexical order matches time order."""
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def decode_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    message_id: str,
    text: str,
    conversation_id: str,
    created_at: datetime,
):
    """
    Insert a message with a server-assigned timestamp.

    Args:
        db: Database session
        message_id: Unique message identifier
        text: Message text
        conversation_id: Conversation the message belongs to
        created_at: Server timestamp (UTC)

    Returns:
        The stored MessageRow
    """
    from phonechat.models import MessageRow

    logger.info(f"Creating message: id={message_id}, conversation={conversation_id}")

    row = MessageRow(
        id=message_id,
        text=text,
        conversation_id=conversation_id,
        created_at=encode_timestamp(created_at),
    )
    db.add(row)
    try:
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create message {message_id}: {e}")
        raise
    db.refresh(row)
    return row


def get_messages_page(
    db: Session,
    conversation_id: str,
    limit: int,
    before: Optional[SqlCursor] = None,
) -> list:
    """
    Retrieve one page of a conversation, newest first.

    Args:
        db: Database session
        conversation_id: Conversation filter (exact match)
        limit: Maximum number of messages to return
        before: Only return messages strictly older than this cursor

    Returns:
        List of MessageRow ordered by created_at DESC, seq DESC
    """
    from phonechat.models import MessageRow

    logger.debug(f"Querying messages: conversation={conversation_id}, limit={limit}, before={before}")

    query = db.query(MessageRow).filter(MessageRow.conversation_id == conversation_id)

    if before is not None:
        created_at, seq = before
        query = query.filter(
            or_(
                MessageRow.created_at < created_at,
                and_(MessageRow.created_at == created_at, MessageRow.seq < seq),
            )
        )

    rows = (
        query.order_by(MessageRow.created_at.desc(), MessageRow.seq.desc())
        .limit(limit)
        .all()
    )
    logger.debug(f"Retrieved {len(rows)} messages")
    return rows
