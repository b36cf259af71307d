"""Tests for photo uploads, upload serving and the paginated feed."""

import datetime
import io

import pytest

from errors import BadRequest
from models import Friendship, Notification, Photo
from notifications import friend_upload_id
from photos import feed_page, parse_limit

BASE_TIME = datetime.datetime(2024, 5, 1, 12, 0, 0)


def _add_photos(session, owner, count, start=BASE_TIME, step_seconds=60):
    photos = []
    for i in range(count):
        # Every third photo shares the previous timestamp so ties hit the id ordering
        slot = i - 1 if i % 3 == 2 else i
        offset = slot * step_seconds
        photo = Photo(
            owner_id=owner.id,
            caption=f"Photo {i}",
            file_path=f"uploads/{i}.jpg",
            created_at=start + datetime.timedelta(seconds=offset),
        )
        photos.append(photo)
    session.add_all(photos)
    session.commit()
    return photos


def _unbounded_order(session, owner_id=None):
    query = session.query(Photo)
    if owner_id is not None:
        query = query.filter_by(owner_id=owner_id)
    return [p.id for p in query.order_by(Photo.created_at.desc(), Photo.id.desc())]


def _walk(session, limit, owner_id=None, between_pages=None):
    seen = []
    cursor = None
    while True:
        page, cursor = feed_page(session, limit, cursor=cursor, owner_id=owner_id)
        seen.extend(photo.id for photo in page)
        if cursor is None:
            return seen
        if between_pages:
            between_pages()


def _upload(client, headers, content, filename, mimetype, caption=None):
    data = {"file": (io.BytesIO(content), filename, mimetype)}
    if caption is not None:
        data["caption"] = caption
    return client.post(
        "/photos", data=data, headers=headers, content_type="multipart/form-data"
    )


@pytest.mark.parametrize(
    "value, expected",
    [(None, 9), ("abc", 9), ("0", 9), ("-3", 9), ("5", 5), ("500", 30)],
)
def test_parse_limit(value, expected):
    assert parse_limit(value, 9, 30) == expected


def test_pages_match_unbounded_order(test_session, make_user):
    owner = make_user("Olivia")
    _add_photos(test_session, owner, 25)

    expected = _unbounded_order(test_session)
    for limit in (1, 4, 9, 25, 30):
        assert _walk(test_session, limit) == expected


def test_head_inserts_do_not_shift_pages(test_session, make_user):
    owner = make_user("Olivia")
    _add_photos(test_session, owner, 12)
    expected = _unbounded_order(test_session)
    newer = iter(range(100))

    def insert_newer_photo():
        test_session.add(
            Photo(
                owner_id=owner.id,
                file_path=f"uploads/new-{next(newer)}.jpg",
                created_at=BASE_TIME + datetime.timedelta(days=1),
            )
        )
        test_session.commit()

    assert _walk(test_session, 5, between_pages=insert_newer_photo) == expected


def test_last_page_has_no_cursor(test_session, make_user):
    owner = make_user("Olivia")
    _add_photos(test_session, owner, 3)

    page, cursor = feed_page(test_session, 3)
    assert len(page) == 3
    assert cursor is None


def test_owner_feed_only_has_owner_photos(test_session, make_user):
    olivia = make_user("Olivia")
    peter = make_user("Peter")
    _add_photos(test_session, olivia, 7)
    peter_photos = _add_photos(test_session, peter, 4)

    assert _walk(test_session, 2, owner_id=olivia.id) == _unbounded_order(test_session, olivia.id)

    # A cursor from someone else's photo makes no sense for this feed
    with pytest.raises(BadRequest):
        feed_page(test_session, 2, cursor=peter_photos[0].id, owner_id=olivia.id)


def test_unknown_cursor(test_session):
    with pytest.raises(BadRequest):
        feed_page(test_session, 5, cursor="does-not-exist")


def test_upload_photo_and_serve_it(client, test_session, make_user, auth_headers, upload_dir):
    owner = make_user("Olivia", user_id="o1")
    friend = make_user("Frank", user_id="f1")
    test_session.add(Friendship(user_a_id="f1", user_b_id="o1"))
    test_session.commit()
    content = b"\x89PNG\r\n\x1a\n" + b"\0" * (2 * 1024 * 1024)

    response = _upload(client, auth_headers(owner), content, "beach.png", "image/png", "  Beach day ")

    assert response.status_code == 201
    photo = response.json["photo"]
    assert photo["caption"] == "Beach day"
    assert photo["owner"]["id"] == owner.id
    assert photo["file_path"].startswith("uploads/")
    assert photo["file_path"].endswith(".png")
    assert photo["file_url"] == "/" + photo["file_path"]
    assert len(list(upload_dir.iterdir())) == 1

    served = client.get(photo["file_url"])
    assert served.status_code == 200
    assert served.data == content

    notification = test_session.get(Notification, friend_upload_id(photo["id"], friend.id))
    assert notification is not None
    assert notification.user_id == friend.id


def test_upload_too_large(client, make_user, auth_headers, upload_dir):
    owner = make_user("Olivia")
    content = b"\xff\xd8\xff" + b"\0" * (6 * 1024 * 1024)

    response = _upload(client, auth_headers(owner), content, "huge.jpg", "image/jpeg")

    assert response.status_code == 413
    assert response.json["message"] == "File exceeds 5MB limit."
    assert list(upload_dir.iterdir()) == []


def test_upload_unsupported_type(client, test_session, make_user, auth_headers, upload_dir):
    owner = make_user("Olivia")

    response = _upload(client, auth_headers(owner), b"GIF89a", "funny.gif", "image/gif")

    assert response.status_code == 415
    assert test_session.query(Photo).count() == 0


def test_upload_type_guessed_from_filename(client, make_user, auth_headers, upload_dir):
    owner = make_user("Olivia")

    response = _upload(
        client, auth_headers(owner), b"\x89PNG\r\n\x1a\n", "sticker.png", "application/octet-stream"
    )

    assert response.status_code == 201
    assert response.json["photo"]["file_path"].endswith(".png")


def test_upload_requires_file(client, make_user, auth_headers, upload_dir):
    owner = make_user("Olivia")
    response = client.post(
        "/photos",
        data={"caption": "no file"},
        headers=auth_headers(owner),
        content_type="multipart/form-data",
    )
    assert response.status_code == 400
    assert response.json["message"] == "Image file is required."


def test_upload_requires_token(client):
    response = _upload(client, {}, b"\xff\xd8\xff", "a.jpg", "image/jpeg")
    assert response.status_code == 401


def test_feed_endpoint_pages(client, test_session, make_user, auth_headers):
    owner = make_user("Olivia")
    _add_photos(test_session, owner, 5)
    headers = auth_headers(owner)

    first = client.get("/photos?limit=3", headers=headers)
    assert first.status_code == 200
    assert len(first.json["photos"]) == 3
    assert first.json["next_cursor"] is not None

    second = client.get(f"/photos?limit=3&cursor={first.json['next_cursor']}", headers=headers)
    assert len(second.json["photos"]) == 2
    assert second.json["next_cursor"] is None

    ids = [p["id"] for p in first.json["photos"] + second.json["photos"]]
    assert ids == _unbounded_order(test_session)


def test_feed_endpoint_invalid_cursor(client, make_user, auth_headers):
    owner = make_user("Olivia")
    response = client.get("/photos?cursor=nope", headers=auth_headers(owner))
    assert response.status_code == 400
    assert response.json["message"] == "Invalid cursor"


def test_user_photos_endpoint(client, test_session, make_user, auth_headers):
    olivia = make_user("Olivia")
    peter = make_user("Peter")
    _add_photos(test_session, olivia, 2)
    _add_photos(test_session, peter, 3)

    response = client.get(f"/users/{peter.id}/photos", headers=auth_headers(olivia))
    assert response.status_code == 200
    assert {p["owner"]["id"] for p in response.json["photos"]} == {peter.id}
    assert len(response.json["photos"]) == 3

    missing = client.get("/users/nobody/photos", headers=auth_headers(olivia))
    assert missing.status_code == 404


def test_serving_rejects_bad_names(client, upload_dir):
    assert client.get("/uploads/..secret").status_code == 400
    assert client.get("/uploads/missing.png").status_code == 404
