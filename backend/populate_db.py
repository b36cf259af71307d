# populate_db.py

import random
from datetime import timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from werkzeug.security import generate_password_hash

from config import Config
from errors import SocialError
from friendship import create_request, friend_ids, respond_to_request
from models import (
    Base,
    Friendship,
    FriendRequest,
    Notification,
    Photo,
    User,
    utcnow,
)
from notifications import fan_out_upload

# ----------------------------
# Test data arrays
# ----------------------------
FIRST_NAMES = [
    "Alice",
    "Bob",
    "Charlie",
    "Diana",
    "Edward",
    "Fiona",
    "George",
    "Hannah",
    "Ian",
    "Julia",
]
LAST_NAMES = [
    "Smith",
    "Jones",
    "Williams",
    "Brown",
    "Davies",
    "Evans",
    "Wilson",
    "Taylor",
    "Wright",
    "White",
]

CAPTION_MESSAGES = [
    "Such a beautiful scene!",
    "My favourite place.",
    "Absolutely stunning!",
    "Wish I was there.",
    "Nature at its best.",
    "Breathtaking view.",
    "Incredible landscape.",
    "Pure serenity.",
    "A moment of peace.",
    None,
]

BIO_MESSAGES = [
    "Photography explorer & storyteller.",
    "Tech blogger and coffee addict.",
    "Artist and world traveler.",
    "Chef and food blogger.",
    "Fitness trainer and wellness coach.",
    "Music lover and concert photographer.",
    "Outdoor adventurer and hiking guide.",
    "Book enthusiast and writer.",
    None,
    None,
]

DEMO_EMAIL = "demo@photocircle.local"
USER_COUNT = 20


# ----------------------------
# Populate test data
# ----------------------------
def populate_data(session=None, seed=None):
    print("Populating test data...")
    rng = random.Random(seed)

    # Create engine and session if not provided
    if session is None:
        engine = create_engine(Config.SQLALCHEMY_DATABASE_URI)
        Base.metadata.create_all(engine)
        Session = sessionmaker(bind=engine)
        session = Session()

    # Clear existing data
    session.query(Notification).delete()
    session.query(Photo).delete()
    session.query(Friendship).delete()
    session.query(FriendRequest).delete()
    session.query(User).delete()
    session.commit()

    users = [
        User(
            email=DEMO_EMAIL,
            password_hash=generate_password_hash("password123"),
            display_name="Demo User",
            handle="demouser",
            bio="Photography explorer & storyteller.",
        )
    ]
    for i in range(1, USER_COUNT):
        display_name = f"{rng.choice(FIRST_NAMES)} {rng.choice(LAST_NAMES)}"
        users.append(
            User(
                email=f"user{i}@example.com",
                password_hash=generate_password_hash(f"password{i}"),
                display_name=display_name,
                handle=f"{display_name.lower().replace(' ', '.')}{i}",
                bio=rng.choice(BIO_MESSAGES),
            )
        )
    session.add_all(users)
    session.commit()
    print(f"Created {len(users)} users.")

    # Friendships go through the request workflow so notifications line up
    friendships_count = 0
    for user in users:
        targets = [u for u in users if u.id != user.id]
        rng.shuffle(targets)
        for target in targets[:2]:
            result = _request_quietly(session, user, target)
            if result is None:
                continue
            if result["status"] == "FRIENDSHIP":
                friendships_count += 1
                continue
            respond_to_request(session, result["request"]["id"], target, "accept")
            friendships_count += 1
    print(f"Created {friendships_count} friendships.")

    # Some requests stay pending
    requests_count = 0
    for user in users[:5]:
        targets = [u for u in users if u.id != user.id]
        rng.shuffle(targets)
        for target in targets[:2]:
            result = _request_quietly(session, user, target)
            if result is not None and result["status"] == "REQUEST":
                requests_count += 1
    print(f"Created {requests_count} pending friend requests.")

    photos_count = 0
    for user in users:
        for _ in range(rng.randint(1, 3)):
            created_at = utcnow() - timedelta(
                days=rng.randint(0, 6),
                hours=rng.randint(0, 23),
                minutes=rng.randint(0, 59),
            )
            photo = Photo(
                owner_id=user.id,
                caption=rng.choice(CAPTION_MESSAGES),
                file_path=f"uploads/seed-{rng.randint(1, 12)}.jpg",
                created_at=created_at,
            )
            session.add(photo)
            session.commit()
            fan_out_upload(session, photo, user, sorted(friend_ids(session, user.id)))
            photos_count += 1
    print(f"Created {photos_count} photos.")

    notifications_count = session.query(Notification).count()
    print(f"Created {notifications_count} notifications.")
    print("Test data population complete.")
    return users


def _request_quietly(session, user, target):
    """Send a request, returning None when the pair is already linked."""
    try:
        return create_request(session, user, target.id)
    except SocialError:
        return None


def main():
    populate_data()


if __name__ == "__main__":
    main()
