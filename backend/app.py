"""Flask backend application for the photo-circle social platform."""

import datetime
import logging
import os
import re
import sys
from functools import wraps

import jwt
from flask import Flask, jsonify, request, send_from_directory
from sqlalchemy import create_engine, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import scoped_session, sessionmaker
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.security import check_password_hash, generate_password_hash

import friendship
import notifications
import photos
from config import Config
from errors import BadRequest, Conflict, NotFound, SocialError, Unauthorized
from models import Base, Photo, User
from schemas import (
    FriendRequestPayload,
    LoginPayload,
    MarkReadPayload,
    ProfilePayload,
    RegisterPayload,
    RespondPayload,
    parse_payload,
)

app = Flask(__name__)
app.config.from_object(Config)

# Configure logging to stdout, for the app and the domain modules
log_handler = logging.StreamHandler(sys.stdout)
log_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
for logger_name in (app.logger.name, "friendship", "notifications", "photos"):
    module_logger = logging.getLogger(logger_name)
    module_logger.addHandler(log_handler)
    module_logger.setLevel(app.config["LOG_LEVEL"])

# Database setup; one session per request, discarded on teardown
engine = create_engine(app.config["SQLALCHEMY_DATABASE_URI"])
Session = scoped_session(sessionmaker(bind=engine))
session = Session

# Create tables if they don't exist (for development purposes)
Base.metadata.create_all(engine)


@app.teardown_appcontext
def remove_session(exception=None):
    Session.remove()


@app.errorhandler(SocialError)
def handle_social_error(error):
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(RequestEntityTooLarge)
def handle_request_too_large(error):
    return jsonify({"message": "Upload is too large."}), 413


@app.errorhandler(SQLAlchemyError)
def handle_database_error(error):
    session.rollback()
    app.logger.error(f"Database error on {request.method} {request.path}: {error}")
    return jsonify({"message": "An internal error occurred."}), 500


def token_required(f):
    """Decorator to require JWT token authentication for API endpoints."""

    @wraps(f)
    def decorated(*args, **kwargs):
        token = None
        if "x-access-token" in request.headers:
            token = request.headers["x-access-token"]
        if not token:
            return jsonify({"message": "Token is missing!"}), 401
        try:
            data = jwt.decode(token, app.config["SECRET_KEY"], algorithms=["HS256"])
            current_user = session.query(User).filter_by(id=data["user_id"]).first()
        except (jwt.InvalidTokenError, KeyError):
            return jsonify({"message": "Token is invalid!"}), 401
        if not current_user:
            return jsonify({"message": "User not found!"}), 401
        return f(current_user, *args, **kwargs)

    return decorated


HANDLE_ATTEMPTS = 3


def slugify(value):
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")[:20].strip("-")
    return slug or "member"


def generate_handle(display_name):
    """Derive a free handle from the display name: slug, slug1 .. slug99, then slug+timestamp."""
    slug = slugify(display_name)
    if len(slug) < 3:
        slug = f"{slug}-member"
    candidates = [slug] + [f"{slug}{i}" for i in range(1, 100)]
    for handle in candidates:
        if not session.query(User.id).filter_by(handle=handle).first():
            return handle
    return f"{slug}{int(datetime.datetime.now().timestamp())}"[:30]


def escape_like(value):
    """Make LIKE wildcards in user input match literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def serialize_account(user):
    return {
        "user_id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "handle": user.handle,
        "image": user.image,
        "bio": user.bio,
    }


@app.route("/auth/register", methods=["POST"])
def register_user():
    """Handle user registration endpoint."""
    payload = parse_payload(
        RegisterPayload, request.get_json(silent=True), "Invalid registration details"
    )

    if session.query(User).filter_by(email=payload.email).first():
        raise Conflict("Email is already registered")

    password_hash = generate_password_hash(payload.password)
    for _ in range(HANDLE_ATTEMPTS):
        new_user = User(
            email=payload.email,
            password_hash=password_hash,
            display_name=payload.display_name,
            handle=generate_handle(payload.display_name),
        )
        try:
            session.add(new_user)
            session.commit()
            break
        except IntegrityError:
            session.rollback()
            if session.query(User.id).filter_by(email=payload.email).first():
                raise Conflict("Email is already registered")
            # Someone else took the generated handle; pick another
            app.logger.warning(f"Handle {new_user.handle} was taken during registration")
    else:
        raise Conflict("Could not reserve a handle, please try again.")

    app.logger.info(f"Registered user {new_user.id} ({new_user.handle})")
    return (
        jsonify(
            {
                "message": "User registered successfully",
                "user_id": new_user.id,
                "user": {
                    "id": new_user.id,
                    "email": new_user.email,
                    "display_name": new_user.display_name,
                    "handle": new_user.handle,
                },
            }
        ),
        201,
    )


@app.route("/auth/login", methods=["POST"])
def login_user():
    payload = parse_payload(LoginPayload, request.get_json(silent=True))

    user = session.query(User).filter_by(email=payload.email).first()

    if not user or not check_password_hash(user.password_hash, payload.password):
        raise Unauthorized("Invalid credentials")

    token = jwt.encode(
        {
            "user_id": user.id,
            "exp": datetime.datetime.now(datetime.timezone.utc)
            + datetime.timedelta(minutes=app.config["TOKEN_EXPIRY_MINUTES"]),
        },
        app.config["SECRET_KEY"],
        algorithm="HS256",
    )

    return jsonify({"message": "Login successful", "token": token, "user_id": user.id}), 200


@app.route("/users/me", methods=["GET"])
@token_required
def get_current_user(current_user):
    """Get current user information endpoint."""
    return jsonify(serialize_account(current_user)), 200


@app.route("/users/<user_id>/profile", methods=["GET"])
@token_required
def get_user_profile(current_user, user_id):
    """Profile overview: the user, their friends and their most recent photos."""
    user = session.query(User).filter_by(id=user_id).first()
    if not user:
        raise NotFound("User not found")

    recent_photos, _ = photos.feed_page(session, limit=9, owner_id=user.id)
    total_photos = session.query(func.count(Photo.id)).filter_by(owner_id=user.id).scalar()

    status = None
    if user.id != current_user.id:
        friends, outgoing, incoming = friendship.relationship_sets(session, current_user.id)
        status = friendship.relationship_status(user.id, friends, outgoing, incoming)

    profile = user.summary()
    profile["created_at"] = user.created_at.isoformat() if user.created_at else None
    return (
        jsonify(
            {
                "user": profile,
                "status": status,
                "friends": friendship.list_friends(session, user.id),
                "photos": [photos.serialize_photo(photo) for photo in recent_photos],
                "total_photos": total_photos,
            }
        ),
        200,
    )


@app.route("/users/search", methods=["GET"])
@token_required
def search_users(current_user):
    """Search users by display name, handle or email, with the caller's relationship to each."""
    query = (request.args.get("q") or "").strip()
    app.logger.debug(f"Search query: {query}")
    if not query:
        return jsonify({"results": []}), 200
    if len(query) < 2:
        raise BadRequest("Query must be at least 2 characters")

    pattern = f"%{escape_like(query)}%"
    users = (
        session.query(User)
        .filter(
            User.id != current_user.id,
            or_(
                User.display_name.ilike(pattern, escape="\\"),
                User.handle.ilike(pattern, escape="\\"),
                User.email.ilike(pattern, escape="\\"),
            ),
        )
        .order_by(User.display_name.asc(), User.id.asc())
        .limit(app.config["SEARCH_RESULT_LIMIT"])
        .all()
    )

    friends, outgoing, incoming = friendship.relationship_sets(session, current_user.id)
    results = []
    for user in users:
        data = user.summary()
        data["status"] = friendship.relationship_status(user.id, friends, outgoing, incoming)
        results.append(data)

    return jsonify({"results": results}), 200


@app.route("/friend-requests", methods=["GET"])
@token_required
def list_friend_requests(current_user):
    return jsonify(friendship.pending_requests(session, current_user.id)), 200


@app.route("/friend-requests", methods=["POST"])
@token_required
def send_friend_request(current_user):
    payload = parse_payload(FriendRequestPayload, request.get_json(silent=True))
    app.logger.debug(
        f"Requesting friendship from {current_user.id} to {payload.recipient_id}"
    )
    result = friendship.create_request(session, current_user, payload.recipient_id)
    return jsonify(result), 201


@app.route("/friend-requests/<request_id>", methods=["PATCH"])
@token_required
def respond_to_friend_request(current_user, request_id):
    payload = parse_payload(RespondPayload, request.get_json(silent=True))
    result = friendship.respond_to_request(session, request_id, current_user, payload.action)
    return jsonify(result), 200


@app.route("/friend-requests/<request_id>", methods=["DELETE"])
@token_required
def cancel_friend_request(current_user, request_id):
    result = friendship.cancel_request(session, request_id, current_user.id)
    return jsonify(result), 200


@app.route("/friends", methods=["GET"])
@token_required
def get_friends(current_user):
    return jsonify({"friends": friendship.list_friends(session, current_user.id)}), 200


@app.route("/friends/suggestions", methods=["GET"])
@token_required
def get_friend_suggestions(current_user):
    suggestions = friendship.suggest_connections(
        session,
        current_user.id,
        pool_size=app.config["SUGGESTION_POOL_SIZE"],
        limit=app.config["SUGGESTION_LIMIT"],
    )
    return jsonify({"suggestions": suggestions}), 200


def _photo_page(owner_id=None):
    limit = photos.parse_limit(
        request.args.get("limit"),
        app.config["FEED_DEFAULT_LIMIT"],
        app.config["FEED_MAX_LIMIT"],
    )
    cursor = request.args.get("cursor") or None
    page, next_cursor = photos.feed_page(session, limit, cursor=cursor, owner_id=owner_id)
    return (
        jsonify(
            {
                "photos": [photos.serialize_photo(photo) for photo in page],
                "next_cursor": next_cursor,
            }
        ),
        200,
    )


@app.route("/photos", methods=["GET"])
def get_photo_feed():
    return _photo_page()


@app.route("/users/<user_id>/photos", methods=["GET"])
@token_required
def get_user_photos(current_user, user_id):
    if not session.query(User.id).filter_by(id=user_id).first():
        raise NotFound("User not found")
    return _photo_page(owner_id=user_id)


@app.route("/photos", methods=["POST"])
@token_required
def upload_photo(current_user):
    """Upload a photo (multipart field "file", optional "caption")."""
    photo = photos.create_photo(
        session,
        current_user,
        request.files.get("file"),
        request.form.get("caption"),
        app.config["UPLOAD_FOLDER"],
        app.config["MAX_UPLOAD_SIZE"],
    )
    return jsonify({"photo": photos.serialize_photo(photo)}), 201


@app.route("/uploads/<filename>")
def uploaded_file(filename):
    """Serve uploaded files with security validation."""
    # Validate filename to prevent directory traversal
    if not filename or ".." in filename or "/" in filename or "\\" in filename:
        app.logger.warning(f"Suspicious filename access attempt: {filename}")
        raise BadRequest("Invalid filename")

    upload_dir = os.path.abspath(app.config["UPLOAD_FOLDER"])
    if not os.path.isfile(os.path.join(upload_dir, filename)):
        raise NotFound("File not found")

    return send_from_directory(upload_dir, filename)


@app.route("/profile", methods=["PATCH"])
@token_required
def update_profile(current_user):
    """Update display name, handle, bio and (optionally) avatar from a multipart form."""
    payload = parse_payload(
        ProfilePayload,
        {
            "display_name": request.form.get("display_name"),
            "handle": request.form.get("handle"),
            "bio": request.form.get("bio"),
        },
        "Invalid profile data",
    )

    if payload.handle:
        taken = (
            session.query(User.id)
            .filter(User.handle == payload.handle, User.id != current_user.id)
            .first()
        )
        if taken:
            raise Conflict("Handle is already taken.")

    avatar = request.files.get("avatar")
    avatar_path = None
    if avatar is not None and avatar.filename:
        avatar_path = photos.store_image(
            avatar, app.config["UPLOAD_FOLDER"], app.config["MAX_UPLOAD_SIZE"]
        )

    current_user.display_name = payload.display_name
    current_user.handle = payload.handle
    current_user.bio = payload.bio
    if avatar_path:
        current_user.image = avatar_path
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        if avatar_path:
            photos.remove_stored_image(avatar_path, app.config["UPLOAD_FOLDER"])
        raise Conflict("Handle is already taken.")

    return jsonify({"user": serialize_account(current_user)}), 200


@app.route("/notifications", methods=["GET"])
@token_required
def get_notifications(current_user):
    """Latest notifications for the current user plus the unread count."""
    limit = photos.parse_limit(
        request.args.get("limit"),
        app.config["NOTIFICATIONS_DEFAULT_LIMIT"],
        app.config["NOTIFICATIONS_MAX_LIMIT"],
    )
    rows, unread_count = notifications.list_notifications(session, current_user.id, limit)
    return (
        jsonify(
            {
                "notifications": notifications.serialize_notifications(rows),
                "unread_count": unread_count,
            }
        ),
        200,
    )


@app.route("/notifications", methods=["PATCH"])
@token_required
def mark_notifications_read(current_user):
    """Mark notifications as read, either by ids or all at once."""
    payload = parse_payload(MarkReadPayload, request.get_json(silent=True))
    updated = notifications.mark_read(
        session, current_user.id, ids=payload.ids, mark_all=bool(payload.mark_all)
    )
    return jsonify({"updated": updated}), 200


if __name__ == "__main__":
    # Use environment variable for host, default to localhost for security
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", "5000"))
    app.run(host=host, port=port)
