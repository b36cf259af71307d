"""Friendship ledger, friend-request workflow and mutual-connection ranking.

A friendship is stored once per unordered pair as (smaller id, larger id), so
"are A and B friends" is a single unique-key lookup from either side. Friend
requests are directed rows, one per (requester, recipient) pair, moving
PENDING -> ACCEPTED | DECLINED | CANCELED. Acceptance writes the request
status, the friendship and both notifications in one transaction.

Status changes are conditional updates (``WHERE status = 'PENDING'``); a
request that changed underneath us shows up as a zero row count rather than a
silent double transition. Uniqueness constraints in the schema remain the
final guard, and an ``IntegrityError`` is reported as a conflict.
"""

import logging
from collections import Counter

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import BadRequest, Conflict, Forbidden, NotFound
from models import (
    REQUEST_ACCEPTED,
    REQUEST_CANCELED,
    REQUEST_DECLINED,
    REQUEST_PENDING,
    Friendship,
    FriendRequest,
    User,
    dialect_insert,
    generate_id,
    utcnow,
)
from notifications import (
    mark_request_notifications_read,
    notify_incoming_request,
    notify_request_accepted,
)

logger = logging.getLogger(__name__)

STATUS_FRIEND = "FRIEND"
STATUS_PENDING = "PENDING"
STATUS_INCOMING = "INCOMING"
STATUS_NONE = "NONE"


def normalize_pair(user_id, other_user_id):
    """Return the pair ordered so the smaller identifier comes first."""
    if user_id == other_user_id:
        raise ValueError("Cannot create friendship with yourself")
    if user_id < other_user_id:
        return user_id, other_user_id
    return other_user_id, user_id


def find_friendship(session, user_id, other_user_id):
    user_a_id, user_b_id = normalize_pair(user_id, other_user_id)
    return (
        session.query(Friendship)
        .filter_by(user_a_id=user_a_id, user_b_id=user_b_id)
        .first()
    )


def friend_ids(session, user_id):
    friendships = session.query(Friendship).filter(
        or_(Friendship.user_a_id == user_id, Friendship.user_b_id == user_id)
    )
    return {friendship.other(user_id) for friendship in friendships}


def ensure_friendship(session, user_id, other_user_id):
    """Create the friendship row for the pair unless it already exists. Does not commit."""
    user_a_id, user_b_id = normalize_pair(user_id, other_user_id)
    stmt = (
        dialect_insert(session, Friendship.__table__)
        .values(
            id=generate_id(),
            user_a_id=user_a_id,
            user_b_id=user_b_id,
            created_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["user_a_id", "user_b_id"])
    )
    session.execute(stmt)
    return (
        session.query(Friendship)
        .filter_by(user_a_id=user_a_id, user_b_id=user_b_id)
        .one()
    )


def serialize_friendship(friendship):
    return {
        "id": friendship.id,
        "created_at": friendship.created_at.isoformat() if friendship.created_at else None,
        "user_a": friendship.user_a.summary(),
        "user_b": friendship.user_b.summary(),
    }


def list_friends(session, user_id):
    """Accepted friendships of user_id, newest first, from the friend's side."""
    friendships = (
        session.query(Friendship)
        .filter(or_(Friendship.user_a_id == user_id, Friendship.user_b_id == user_id))
        .order_by(Friendship.created_at.desc(), Friendship.id.desc())
        .all()
    )
    friends = []
    for friendship in friendships:
        friend = friendship.user_b if friendship.user_a_id == user_id else friendship.user_a
        data = friend.summary()
        data["since"] = friendship.created_at.isoformat() if friendship.created_at else None
        friends.append(data)
    return friends


def pending_requests(session, user_id):
    """Incoming and outgoing PENDING requests for user_id, newest first."""
    incoming = (
        session.query(FriendRequest)
        .filter_by(recipient_id=user_id, status=REQUEST_PENDING)
        .order_by(FriendRequest.created_at.desc(), FriendRequest.id.desc())
        .all()
    )
    outgoing = (
        session.query(FriendRequest)
        .filter_by(requester_id=user_id, status=REQUEST_PENDING)
        .order_by(FriendRequest.created_at.desc(), FriendRequest.id.desc())
        .all()
    )
    return {
        "incoming": [
            {
                "id": req.id,
                "created_at": req.created_at.isoformat() if req.created_at else None,
                "requester": req.requester.summary(),
            }
            for req in incoming
        ],
        "outgoing": [
            {
                "id": req.id,
                "created_at": req.created_at.isoformat() if req.created_at else None,
                "recipient": req.recipient.summary(),
            }
            for req in outgoing
        ],
    }


def relationship_sets(session, user_id):
    """Friend ids, outgoing pending ids and incoming pending ids for user_id."""
    friends = friend_ids(session, user_id)
    rows = (
        session.query(FriendRequest.requester_id, FriendRequest.recipient_id)
        .filter(
            FriendRequest.status == REQUEST_PENDING,
            or_(
                FriendRequest.requester_id == user_id,
                FriendRequest.recipient_id == user_id,
            ),
        )
        .all()
    )
    outgoing = {recipient for requester, recipient in rows if requester == user_id}
    incoming = {requester for requester, recipient in rows if recipient == user_id}
    return friends, outgoing, incoming


def relationship_status(other_id, friends, outgoing, incoming):
    if other_id in friends:
        return STATUS_FRIEND
    if other_id in outgoing:
        return STATUS_PENDING
    if other_id in incoming:
        return STATUS_INCOMING
    return STATUS_NONE


def _transition(session, request_id, new_status):
    """Move a PENDING request to new_status; returns False if it was no longer PENDING."""
    result = session.execute(
        update(FriendRequest)
        .where(FriendRequest.id == request_id, FriendRequest.status == REQUEST_PENDING)
        .values(status=new_status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _accept(session, friend_request, accepted_by):
    """Accept a PENDING request and create the friendship in one transaction.

    Returns the friendship, or None if the request stopped being PENDING first.
    """
    try:
        if not _transition(session, friend_request.id, REQUEST_ACCEPTED):
            session.rollback()
            return None
        friendship = ensure_friendship(
            session, friend_request.requester_id, friend_request.recipient_id
        )
        mark_request_notifications_read(
            session, friend_request.recipient_id, friend_request.id
        )
        notify_request_accepted(session, friend_request, accepted_by)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    logger.info(
        f"Friend request {friend_request.id} accepted; friendship {friendship.id} "
        f"({friendship.user_a_id}, {friendship.user_b_id})"
    )
    return friendship


def create_request(session, requester, recipient_id):
    """Send a friend request, or become friends at once if the recipient already asked."""
    if requester.id == recipient_id:
        raise BadRequest("You cannot add yourself.")

    recipient = session.query(User).filter_by(id=recipient_id).first()
    if not recipient:
        raise NotFound("User not found.")

    if find_friendship(session, requester.id, recipient_id):
        raise Conflict("You are already friends.")

    inverse = (
        session.query(FriendRequest)
        .filter_by(requester_id=recipient_id, recipient_id=requester.id)
        .populate_existing()
        .first()
    )
    if inverse and inverse.status == REQUEST_PENDING:
        friendship = _accept(session, inverse, accepted_by=requester)
        if friendship is not None:
            return {
                "status": "FRIENDSHIP",
                "request": {"id": inverse.id, "requester": recipient.summary()},
                "friendship": serialize_friendship(friendship),
            }
        if find_friendship(session, requester.id, recipient_id):
            raise Conflict("You are already friends.")
        logger.debug(
            f"Inverse request {inverse.id} changed before it could be accepted; "
            f"sending a new request instead"
        )

    outgoing = (
        session.query(FriendRequest)
        .filter_by(requester_id=requester.id, recipient_id=recipient_id)
        .populate_existing()
        .first()
    )
    if outgoing and outgoing.status == REQUEST_PENDING:
        raise Conflict("Request already sent.")

    now = utcnow()
    stmt = (
        dialect_insert(session, FriendRequest.__table__)
        .values(
            id=generate_id(),
            requester_id=requester.id,
            recipient_id=recipient_id,
            status=REQUEST_PENDING,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_update(
            index_elements=["requester_id", "recipient_id"],
            set_={"status": REQUEST_PENDING, "updated_at": now},
        )
    )
    try:
        session.execute(stmt)
        friend_request = (
            session.query(FriendRequest)
            .filter_by(requester_id=requester.id, recipient_id=recipient_id)
            .populate_existing()
            .one()
        )
        notify_incoming_request(session, friend_request, requester)
        session.commit()
    except IntegrityError:
        session.rollback()
        raise Conflict("Friend request already exists or similar issue.")
    except SQLAlchemyError:
        session.rollback()
        raise

    logger.info(f"Friend request {friend_request.id}: {requester.id} -> {recipient_id}")
    return {
        "status": "REQUEST",
        "request": {
            "id": friend_request.id,
            "created_at": friend_request.created_at.isoformat(),
            "recipient": recipient.summary(),
        },
    }


def respond_to_request(session, request_id, responder, action):
    """Accept or decline a PENDING request on behalf of its recipient."""
    friend_request = (
        session.query(FriendRequest).filter_by(id=request_id).populate_existing().first()
    )
    if not friend_request:
        raise NotFound("Request not found")
    if friend_request.status != REQUEST_PENDING:
        raise BadRequest("Request already handled")
    if friend_request.recipient_id != responder.id:
        raise Forbidden("Only the recipient can respond.")

    if action == "decline":
        try:
            if not _transition(session, friend_request.id, REQUEST_DECLINED):
                session.rollback()
                raise BadRequest("Request already handled")
            mark_request_notifications_read(session, responder.id, friend_request.id)
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        logger.info(f"Friend request {friend_request.id} declined")
        return {
            "status": "DECLINED",
            "request": {
                "id": friend_request.id,
                "requester": friend_request.requester.summary(),
            },
        }

    friendship = _accept(session, friend_request, accepted_by=responder)
    if friendship is None:
        raise BadRequest("Request already handled")
    return {
        "status": "ACCEPTED",
        "request": {
            "id": friend_request.id,
            "requester": friend_request.requester.summary(),
        },
        "friendship": serialize_friendship(friendship),
    }


def cancel_request(session, request_id, requester_id):
    """Withdraw a PENDING request, or clear away a request that was already handled."""
    friend_request = (
        session.query(FriendRequest).filter_by(id=request_id).populate_existing().first()
    )
    if not friend_request:
        raise NotFound("Request not found")
    if friend_request.requester_id != requester_id:
        raise Forbidden("Only the requester can cancel.")

    try:
        if friend_request.status == REQUEST_PENDING and _transition(
            session, friend_request.id, REQUEST_CANCELED
        ):
            mark_request_notifications_read(
                session, friend_request.recipient_id, friend_request.id
            )
            session.commit()
            logger.info(f"Friend request {friend_request.id} canceled")
            return {"status": "CANCELED"}

        session.delete(friend_request)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    logger.info(f"Friend request {request_id} removed")
    return {"status": "REMOVED"}


def suggest_connections(session, user_id, pool_size, limit):
    """Rank non-friends by how many of user_id's friends they share.

    Candidates are the most recent pool_size users that are not the user, a
    friend, or on the other end of a pending request.
    """
    friends, outgoing, incoming = relationship_sets(session, user_id)
    if not friends:
        return []

    excluded = friends | outgoing | incoming | {user_id}
    candidates = (
        session.query(User)
        .filter(User.id.notin_(excluded))
        .order_by(User.created_at.desc(), User.id.desc())
        .limit(pool_size)
        .all()
    )
    if not candidates:
        return []

    candidate_ids = {candidate.id for candidate in candidates}
    rows = (
        session.query(Friendship.user_a_id, Friendship.user_b_id)
        .filter(
            or_(
                and_(
                    Friendship.user_a_id.in_(candidate_ids),
                    Friendship.user_b_id.in_(friends),
                ),
                and_(
                    Friendship.user_b_id.in_(candidate_ids),
                    Friendship.user_a_id.in_(friends),
                ),
            )
        )
        .all()
    )
    mutual_counts = Counter()
    for user_a_id, user_b_id in rows:
        if user_a_id in candidate_ids:
            mutual_counts[user_a_id] += 1
        else:
            mutual_counts[user_b_id] += 1

    ranked = sorted(
        (c for c in candidates if mutual_counts[c.id] > 0),
        key=lambda c: (-mutual_counts[c.id], c.display_name or "", c.id),
    )
    suggestions = []
    for candidate in ranked[:limit]:
        data = candidate.summary()
        data["mutual_count"] = mutual_counts[candidate.id]
        data["status"] = STATUS_NONE
        suggestions.append(data)
    return suggestions
