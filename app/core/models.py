from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    String,
    TIMESTAMP,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.core.database import Base


# =========================
# User
# =========================
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String, nullable=True)
    email = Column(String, nullable=False, unique=True, index=True)
    password = Column(String, nullable=False)
    role = Column(String, nullable=False, server_default="user")

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    conversations = relationship(
        "AssistantConversation",
        back_populates="owner",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# =========================
# Assistant conversation
# =========================
class AssistantConversation(Base):
    """
    One dialogue between a user and the database assistant.

    The id is opaque and generated by the assistant (or supplied by the caller
    on the first turn). Every read and write is filtered by owner_id.
    """

    __tablename__ = "assistant_conversations"

    id = Column(String(64), primary_key=True)

    owner_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    title = Column(String(120), nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    owner = relationship("User", back_populates="conversations")

    turns = relationship(
        "AssistantTurn",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="AssistantTurn.seq",
    )


# =========================
# Assistant turn (append-only)
# =========================
class AssistantTurn(Base):
    """
    A single user or assistant message.

    seq is the position inside the conversation; (conversation_id, seq) is
    unique so two concurrent appends can never land on the same slot.
    """

    __tablename__ = "assistant_turns"
    __table_args__ = (
        UniqueConstraint("conversation_id", "seq", name="uq_assistant_turn_seq"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    conversation_id = Column(
        String(64),
        ForeignKey("assistant_conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    seq = Column(Integer, nullable=False)
    role = Column(String(16), nullable=False)  # user / assistant
    text = Column(Text, nullable=False)

    # Set only when the answer was grounded in a database query
    query_used = Column(Text, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    conversation = relationship("AssistantConversation", back_populates="turns")
