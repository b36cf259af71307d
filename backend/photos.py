"""Photo uploads and the cursor-paginated photo feed."""

import logging
import mimetypes
import os
import posixpath
import uuid

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload

from errors import BadRequest, PayloadTooLarge, UnsupportedMediaType
from friendship import friend_ids
from models import Photo
from notifications import fan_out_upload, normalise_stored_image

logger = logging.getLogger(__name__)

# Only these MIME types are accepted; each maps to the extension we store under
ALLOWED_MIME_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}
PUBLIC_PREFIX = "uploads"


def parse_limit(value, default, maximum):
    """Clamp a ?limit= query value to 1..maximum, falling back to default."""
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return default
    if limit <= 0:
        return default
    return min(limit, maximum)


def detect_mime_type(file):
    mimetype = file.mimetype
    if not mimetype or mimetype == "application/octet-stream":
        mimetype, _ = mimetypes.guess_type(file.filename or "")
    return mimetype


def file_size(file):
    stream = file.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def validate_image(file, max_size):
    """Check presence, type and size of an uploaded image; returns its MIME type."""
    if file is None or not file.filename:
        raise BadRequest("Image file is required.")

    mimetype = detect_mime_type(file)
    if mimetype not in ALLOWED_MIME_TYPES:
        raise UnsupportedMediaType("Unsupported file type. Upload JPEG, PNG, or WebP.")

    if file_size(file) > max_size:
        raise PayloadTooLarge(f"File exceeds {max_size // (1024 * 1024)}MB limit.")

    return mimetype


def generate_secure_filename(mimetype):
    """Generate a unique filename completely isolated from user input."""
    return f"{uuid.uuid4().hex}.{ALLOWED_MIME_TYPES[mimetype]}"


def public_path(filename):
    return posixpath.join(PUBLIC_PREFIX, filename)


def store_image(file, upload_folder, max_size):
    """Validate and write an uploaded image, returning its public path ("uploads/<name>")."""
    mimetype = validate_image(file, max_size)
    filename = generate_secure_filename(mimetype)

    os.makedirs(upload_folder, exist_ok=True)
    upload_dir = os.path.abspath(upload_folder)
    file_path = os.path.join(upload_dir, filename)
    if not file_path.startswith(upload_dir + os.sep):
        logger.error(f"Path traversal attempt detected: {file_path}")
        raise BadRequest("Invalid file path")

    file.save(file_path)
    logger.debug(f"Stored upload {filename} ({mimetype})")
    return public_path(filename)


def remove_stored_image(stored_path, upload_folder):
    disk_path = os.path.join(os.path.abspath(upload_folder), posixpath.basename(stored_path))
    try:
        os.remove(disk_path)
    except OSError as e:
        logger.warning(f"Could not remove orphaned upload {disk_path}: {e}")


def create_photo(session, owner, file, caption, upload_folder, max_size):
    """Store an uploaded photo, then notify the owner's friends about it."""
    caption = caption.strip() if caption else None
    stored_path = store_image(file, upload_folder, max_size)

    photo = Photo(owner_id=owner.id, caption=caption or None, file_path=stored_path)
    try:
        session.add(photo)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        remove_stored_image(stored_path, upload_folder)
        raise
    logger.info(f"Photo {photo.id} uploaded by user {owner.id}: {stored_path}")

    fan_out_upload(session, photo, owner, sorted(friend_ids(session, owner.id)))
    return photo


def feed_page(session, limit, cursor=None, owner_id=None):
    """One page of photos, newest first, and the cursor for the next page.

    Rows are ordered by (created_at, id) descending. The query asks for one row
    more than the page; that extra row is not returned but its id becomes the
    next cursor, and the next page starts at it (inclusive).
    """
    query = session.query(Photo).options(joinedload(Photo.owner))
    if owner_id is not None:
        query = query.filter(Photo.owner_id == owner_id)

    if cursor:
        anchor = session.query(Photo).filter_by(id=cursor).first()
        if anchor is None or (owner_id is not None and anchor.owner_id != owner_id):
            raise BadRequest("Invalid cursor")
        query = query.filter(
            or_(
                Photo.created_at < anchor.created_at,
                and_(Photo.created_at == anchor.created_at, Photo.id <= anchor.id),
            )
        )

    photos = (
        query.order_by(Photo.created_at.desc(), Photo.id.desc()).limit(limit + 1).all()
    )
    next_cursor = None
    if len(photos) > limit:
        next_cursor = photos.pop().id
    return photos, next_cursor


def serialize_photo(photo):
    return {
        "id": photo.id,
        "caption": photo.caption,
        "file_path": photo.file_path,
        "file_url": normalise_stored_image(photo.file_path),
        "created_at": photo.created_at.isoformat(),
        "owner": photo.owner.summary(),
    }
