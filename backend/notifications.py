"""Notification fan-out: deterministic ids, metadata encoding, and client serialization.

Notification rows are never created with random ids. Each event derives its id
from the natural key of what happened, and writes go through an
``INSERT ... ON CONFLICT (id) DO UPDATE`` so a replayed event rewrites the same
row (and marks it unread again) instead of adding a duplicate.
"""

import json
import logging

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError

from models import (
    NOTIFICATION_FRIEND_REQUEST,
    NOTIFICATION_UPLOAD,
    Notification,
    dialect_insert,
    utcnow,
)

logger = logging.getLogger(__name__)

VARIANT_INCOMING_REQUEST = "incoming_request"
VARIANT_REQUEST_ACCEPTED = "request_accepted"
VARIANT_FRIEND_UPLOAD = "friend_upload"
VARIANTS = (VARIANT_INCOMING_REQUEST, VARIANT_REQUEST_ACCEPTED, VARIANT_FRIEND_UPLOAD)


def incoming_request_id(request_id):
    return f"notif-{request_id}-incoming"


def request_accepted_id(request_id):
    return f"notif-{request_id}-accepted"


def friend_upload_id(photo_id, friend_id):
    return f"notif-{photo_id}-{friend_id}"


def normalise_stored_image(image):
    """Stored paths are relative ("uploads/x.png"); clients get a rooted URL."""
    if not image:
        return None
    return image if image.startswith("/") else f"/{image}"


def person_summary(user):
    return {
        "id": user.id,
        "display_name": user.display_name,
        "handle": user.handle,
        "image": user.image,
    }


def encode_metadata(metadata):
    return json.dumps(metadata, sort_keys=True)


def parse_metadata(value):
    """Decode stored metadata; returns None for empty, corrupt or unknown payloads."""
    if not value:
        return None
    try:
        metadata = json.loads(value)
    except ValueError as e:
        logger.warning(f"Failed to parse notification metadata: {e}")
        return None
    if not isinstance(metadata, dict) or metadata.get("variant") not in VARIANTS:
        return None
    return metadata


def upsert_notification(session, notification_id, user_id, notification_type, metadata):
    """Insert or rewrite a notification row and reset it to unread. Does not commit."""
    encoded = encode_metadata(metadata)
    stmt = dialect_insert(session, Notification.__table__).values(
        id=notification_id,
        user_id=user_id,
        type=notification_type,
        metadata=encoded,
        read_at=None,
        created_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["id"],
        set_={
            "user_id": user_id,
            "type": notification_type,
            "metadata": encoded,
            "read_at": None,
        },
    )
    session.execute(stmt)
    logger.debug(f"Upserted notification {notification_id} for user {user_id}")
    return notification_id


def notify_incoming_request(session, friend_request, requester):
    return upsert_notification(
        session,
        incoming_request_id(friend_request.id),
        friend_request.recipient_id,
        NOTIFICATION_FRIEND_REQUEST,
        {
            "variant": VARIANT_INCOMING_REQUEST,
            "request_id": friend_request.id,
            "from": person_summary(requester),
        },
    )


def notify_request_accepted(session, friend_request, accepted_by):
    return upsert_notification(
        session,
        request_accepted_id(friend_request.id),
        friend_request.requester_id,
        NOTIFICATION_FRIEND_REQUEST,
        {
            "variant": VARIANT_REQUEST_ACCEPTED,
            "request_id": friend_request.id,
            "by": person_summary(accepted_by),
        },
    )


def mark_request_notifications_read(session, user_id, request_id):
    """Mark the user's unread friend-request notifications that embed request_id as read."""
    result = session.execute(
        update(Notification)
        .where(
            Notification.user_id == user_id,
            Notification.read_at.is_(None),
            Notification.type == NOTIFICATION_FRIEND_REQUEST,
            Notification.payload.contains(request_id),
        )
        .values(read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def fan_out_upload(session, photo, owner, friend_ids):
    """Notify every friend about a new photo.

    The photo is already committed. Each friend's notification is committed on
    its own so one failure only costs that friend's notification.
    """
    metadata = {
        "variant": VARIANT_FRIEND_UPLOAD,
        "photo_id": photo.id,
        "photo": {"caption": photo.caption, "file_path": photo.file_path},
        "user": person_summary(owner),
    }
    delivered = 0
    for friend_id in friend_ids:
        try:
            upsert_notification(
                session,
                friend_upload_id(photo.id, friend_id),
                friend_id,
                NOTIFICATION_UPLOAD,
                metadata,
            )
            session.commit()
            delivered += 1
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning(
                f"Failed to notify friend {friend_id} about photo {photo.id}: {e}"
            )
    logger.info(
        f"Upload fan-out for photo {photo.id}: {delivered}/{len(friend_ids)} friends notified"
    )
    return delivered


def list_notifications(session, user_id, limit):
    """Newest notifications for the user plus the total unread count."""
    notifications = (
        session.query(Notification)
        .filter_by(user_id=user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .all()
    )
    unread_count = (
        session.query(func.count(Notification.id))
        .filter(Notification.user_id == user_id, Notification.read_at.is_(None))
        .scalar()
    )
    return notifications, unread_count


def mark_read(session, user_id, ids=None, mark_all=False):
    """Mark the user's unread notifications (all, or the given ids) as read and commit."""
    stmt = update(Notification).where(
        Notification.user_id == user_id, Notification.read_at.is_(None)
    )
    if not mark_all:
        stmt = stmt.where(Notification.id.in_(ids or []))
    try:
        result = session.execute(
            stmt.values(read_at=utcnow()).execution_options(synchronize_session=False)
        )
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    return result.rowcount


def _client_type(notification_type):
    return "upload" if notification_type == NOTIFICATION_UPLOAD else "friend_request"


def serialize_notification(notification):
    """Client view of a notification, or None when its metadata is unusable."""
    metadata = parse_metadata(notification.payload)
    if metadata is None:
        return None

    data = {
        "id": notification.id,
        "type": _client_type(notification.type),
        "variant": metadata["variant"],
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "is_read": notification.read_at is not None,
    }

    try:
        data["data"] = _variant_data(metadata)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.warning(f"Skipping notification {notification.id} with incomplete metadata: {e!r}")
        return None
    return data


def _variant_data(metadata):
    if metadata["variant"] == VARIANT_INCOMING_REQUEST:
        sender = dict(metadata["from"])
        sender["image"] = normalise_stored_image(sender.get("image"))
        return {"request_id": metadata["request_id"], "from": sender}
    if metadata["variant"] == VARIANT_REQUEST_ACCEPTED:
        accepter = dict(metadata["by"])
        accepter["image"] = normalise_stored_image(accepter.get("image"))
        return {"request_id": metadata["request_id"], "by": accepter}
    uploader = dict(metadata["user"])
    uploader["image"] = normalise_stored_image(uploader.get("image"))
    photo = metadata["photo"]
    return {
        "photo_id": metadata["photo_id"],
        "photo": {
            "caption": photo.get("caption"),
            "file_path": photo["file_path"],
            "file_url": normalise_stored_image(photo["file_path"]),
        },
        "user": uploader,
    }


def serialize_notifications(notifications):
    serialized = (serialize_notification(n) for n in notifications)
    return [n for n in serialized if n is not None]
