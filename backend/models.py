"""Database models for the photo-circle backend."""

import datetime
import uuid

from sqlalchemy import (
    TIMESTAMP,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

REQUEST_PENDING = "PENDING"
REQUEST_ACCEPTED = "ACCEPTED"
REQUEST_DECLINED = "DECLINED"
REQUEST_CANCELED = "CANCELED"

NOTIFICATION_FRIEND_REQUEST = "FRIEND_REQUEST"
NOTIFICATION_UPLOAD = "UPLOAD"


def generate_id():
    """Return a new opaque identifier; identifiers compare as plain strings."""
    return uuid.uuid4().hex


def utcnow():
    """Naive UTC timestamp, matching the TIMESTAMP columns."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class User(Base):
    """User model representing registered users in the system."""

    __tablename__ = "users"

    id = Column(String(32), primary_key=True, default=generate_id)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    display_name = Column(String(60), nullable=False)
    handle = Column(String(30), unique=True, nullable=True)  # stored lower-case
    bio = Column(String(160), nullable=True)
    image = Column(String(255), nullable=True)  # avatar path under uploads/
    created_at = Column(TIMESTAMP, default=func.now())

    photos = relationship("Photo", back_populates="owner", cascade="all, delete-orphan")
    # Relationships for friendships
    friendships_as_a = relationship(
        "Friendship",
        foreign_keys="[Friendship.user_a_id]",
        back_populates="user_a",
    )
    friendships_as_b = relationship(
        "Friendship",
        foreign_keys="[Friendship.user_b_id]",
        back_populates="user_b",
    )
    # Relationships for friend requests
    sent_requests = relationship(
        "FriendRequest",
        foreign_keys="[FriendRequest.requester_id]",
        back_populates="requester",
    )
    received_requests = relationship(
        "FriendRequest",
        foreign_keys="[FriendRequest.recipient_id]",
        back_populates="recipient",
    )

    def summary(self):
        """Compact public view embedded in other payloads."""
        return {
            "id": self.id,
            "display_name": self.display_name,
            "handle": self.handle,
            "image": self.image,
            "bio": self.bio,
        }

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"


class Photo(Base):
    """Photo model representing uploaded images; immutable once created."""

    __tablename__ = "photos"

    id = Column(String(32), primary_key=True, default=generate_id)
    owner_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    caption = Column(Text, nullable=True)
    file_path = Column(String(255), nullable=False)
    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)

    owner = relationship("User", back_populates="photos")

    __table_args__ = (Index("ix_photos_created_at_id", "created_at", "id"),)


class Friendship(Base):
    """Established friendship; one row per unordered pair, stored as (smaller id, larger id)."""

    __tablename__ = "friendships"

    id = Column(String(32), primary_key=True, default=generate_id)
    user_a_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    user_b_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    created_at = Column(TIMESTAMP, default=func.now())

    user_a = relationship(
        "User", foreign_keys="[Friendship.user_a_id]", back_populates="friendships_as_a"
    )
    user_b = relationship(
        "User", foreign_keys="[Friendship.user_b_id]", back_populates="friendships_as_b"
    )

    __table_args__ = (
        UniqueConstraint("user_a_id", "user_b_id", name="uq_friendship_pair"),
        CheckConstraint("user_a_id < user_b_id", name="ck_friendship_a_lt_b"),
        Index("ix_friendships_user_b", "user_b_id"),
    )

    def other(self, user_id):
        """Return the id of the friend on the other side of user_id."""
        return self.user_b_id if self.user_a_id == user_id else self.user_a_id


class FriendRequest(Base):
    """Directed friend request; one row per (requester, recipient) pair."""

    __tablename__ = "friend_requests"

    id = Column(String(32), primary_key=True, default=generate_id)
    requester_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    recipient_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    status = Column(String(16), default=REQUEST_PENDING, nullable=False)
    created_at = Column(TIMESTAMP, default=func.now())
    updated_at = Column(TIMESTAMP, default=func.now(), onupdate=func.now())

    requester = relationship(
        "User", foreign_keys="[FriendRequest.requester_id]", back_populates="sent_requests"
    )
    recipient = relationship(
        "User", foreign_keys="[FriendRequest.recipient_id]", back_populates="received_requests"
    )

    __table_args__ = (
        UniqueConstraint("requester_id", "recipient_id", name="uq_friend_request_pair"),
        Index("ix_friend_requests_recipient_status", "recipient_id", "status"),
    )


class Notification(Base):
    """Notification model; ids are derived from the triggering event so upserts are idempotent."""

    __tablename__ = "notifications"

    id = Column(String(80), primary_key=True)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False)  # recipient
    type = Column(String(32), nullable=False)  # FRIEND_REQUEST | UPLOAD
    # JSON text, tagged by "variant"; column is called metadata in the database
    payload = Column("metadata", Text, nullable=True)
    read_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, default=utcnow)

    user = relationship("User", foreign_keys=[user_id])

    __table_args__ = (Index("ix_notifications_user_read", "user_id", "read_at"),)


def dialect_insert(session, table):
    """INSERT construct supporting ON CONFLICT for the session's database."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(table)
    return sqlite_insert(table)
