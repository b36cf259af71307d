from unittest.mock import patch

import populate_db
from friendship import friend_ids
from models import (
    NOTIFICATION_UPLOAD,
    REQUEST_PENDING,
    Friendship,
    FriendRequest,
    Notification,
    Photo,
    User,
)


# -----------------------------
# Test populate_data against a real session
# -----------------------------
def test_populate_data_with_session(test_session, capsys):
    users = populate_db.populate_data(session=test_session, seed=7)

    assert len(users) == populate_db.USER_COUNT
    assert test_session.query(User).count() == populate_db.USER_COUNT
    assert test_session.query(User).filter_by(email=populate_db.DEMO_EMAIL).one()
    assert test_session.query(Friendship).count() > 0
    assert 20 <= test_session.query(Photo).count() <= 60

    # Friendships are stored once per pair, smaller id first
    for row in test_session.query(Friendship):
        assert row.user_a_id < row.user_b_id

    # Every pending request is still waiting on a non-friend
    for req in test_session.query(FriendRequest).filter_by(status=REQUEST_PENDING):
        assert req.recipient_id not in friend_ids(test_session, req.requester_id)

    # Upload notifications only go to the uploader's friends
    uploads = test_session.query(Notification).filter_by(type=NOTIFICATION_UPLOAD).all()
    assert uploads
    for notification in uploads:
        photo_id = notification.id.split("-")[1]
        photo = test_session.get(Photo, photo_id)
        assert notification.user_id in friend_ids(test_session, photo.owner_id)

    captured = capsys.readouterr()
    assert "Populating test data..." in captured.out
    assert "Created 20 users." in captured.out
    assert "Created" in captured.out and "friendships." in captured.out
    assert "Created" in captured.out and "photos." in captured.out
    assert "Test data population complete." in captured.out


def test_populate_data_replaces_existing_rows(test_session):
    populate_db.populate_data(session=test_session, seed=1)
    populate_db.populate_data(session=test_session, seed=2)
    assert test_session.query(User).count() == populate_db.USER_COUNT


# -----------------------------
# Test populate_data WITHOUT passing a session
# -----------------------------
@patch("populate_db.Config.SQLALCHEMY_DATABASE_URI", "sqlite://")
def test_populate_data_creates_own_session(capsys):
    users = populate_db.populate_data(seed=3)
    assert len(users) == populate_db.USER_COUNT

    captured = capsys.readouterr()
    assert "Test data population complete." in captured.out


# -----------------------------
# Test main entry point
# -----------------------------
@patch("populate_db.populate_data")
def test_main(mock_populate):
    populate_db.main()
    mock_populate.assert_called_once_with()
