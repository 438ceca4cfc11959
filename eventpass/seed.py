"""Development helpers for populating fake events and guests."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .crud import create_announcement, create_user
from .database import get_session
from .events import EVENT_TYPES, EventInput, ScheduleItemInput, create_event
from .membership import GuestStatus, JoinRequest, invite_guest, join_event, update_guest_status
from .models import Event, User
from .storage import init_db
from .utils import utcnow

_event_names = {
    "WEDDING": ["Wedding", "Reception", "Engagement Party"],
    "BIRTHDAY": ["Birthday Bash", "Surprise Party", "Birthday Brunch"],
    "CORPORATE": ["Offsite", "Product Launch", "All Hands"],
    "COLLEGE_FEST": ["Spring Fest", "Tech Fest", "Cultural Night"],
    "OTHER": ["Meetup", "Dinner", "Game Night"],
}
_schedule_slots = [
    ("Welcome", "9:00 AM", "9:30 AM"),
    ("Opening Remarks", "9:30 AM", "10:00 AM"),
    ("Lunch", "12:00 PM", "1:00 PM"),
    ("Main Session", "2:00 PM", "4:00 PM"),
    ("Closing", "5:00 PM", "5:30 PM"),
]


def seed_fake_data(
    *,
    event_count: int = 5,
    max_guests_per_event: int = 8,
    private_percentage: int = 20,
) -> dict[str, int]:
    """Populate the database with synthetic admins, events and guests."""
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if max_guests_per_event < 0:
        raise ValueError("max_guests_per_event must be >= 0")
    if not 0 <= private_percentage <= 100:
        raise ValueError("private_percentage must be between 0 and 100")

    init_db()
    fake = Faker()
    stats = {"users": 0, "events": 0, "guests": 0, "schedule_items": 0}

    with get_session() as session:
        for _ in range(event_count):
            admin = _create_person(session, fake, role="ADMIN")
            stats["users"] += 1
            event, item_count = _create_event(session, fake, admin, private_percentage)
            stats["events"] += 1
            stats["schedule_items"] += item_count
            guests = _create_guests(session, fake, event, max_guests_per_event)
            stats["users"] += guests
            stats["guests"] += guests
            if random.random() < 0.5:
                create_announcement(
                    session,
                    event=event,
                    title=fake.catch_phrase(),
                    message=fake.sentence(),
                    sender_id=admin.id,
                )

    return stats


def _create_person(session: Session, fake: Faker, *, role: str = "GUEST") -> User:
    return create_user(
        session,
        email=fake.unique.email(),
        name=fake.name(),
        role=role,
        auth_uid=fake.unique.uuid4(),
    )


def _random_start_date() -> datetime:
    now = utcnow()
    day_offset = random.randint(-3, 45)
    return (now + timedelta(days=day_offset)).replace(
        hour=0, minute=0, second=0, microsecond=0
    )


def _create_event(
    session: Session, fake: Faker, admin: User, private_percentage: int
) -> tuple[Event, int]:
    event_type = random.choice(EVENT_TYPES)
    if random.randint(1, 100) <= private_percentage:
        visibility = "PRIVATE"
    else:
        visibility = random.choice(["PUBLIC", "PUBLIC", "PUBLIC", "UNLISTED"])
    start_date = _random_start_date()
    slots = sorted(random.sample(_schedule_slots, k=random.randint(0, 3)), key=_slot_order)
    data = EventInput(
        name=f"{fake.city()} {random.choice(_event_names[event_type])}",
        description=fake.paragraph(),
        start_date=start_date,
        end_date=start_date + timedelta(days=random.randint(0, 2)),
        start_time="8:00 AM",
        end_time="11:00 PM",
        venue={
            "name": fake.company(),
            "address": fake.street_address(),
            "city": fake.city(),
            "state": fake.state_abbr(),
            "zip_code": fake.zipcode(),
        },
        event_type=event_type,
        visibility=visibility,
        schedule_items=[
            ScheduleItemInput(title=title, start_time=start, end_time=end)
            for title, start, end in slots
        ],
    )
    return create_event(session, admin.id, data), len(slots)


def _slot_order(slot: tuple[str, str, str]) -> int:
    return _schedule_slots.index(slot)


def _create_guests(session: Session, fake: Faker, event: Event, max_guests: int) -> int:
    if max_guests <= 0:
        return 0
    total = random.randint(0, max_guests)
    for _ in range(total):
        guest = _create_person(session, fake)
        if event.visibility == "PRIVATE":
            # private events reject self-joins; accept the invite on the guest's behalf
            invite_guest(session, event, user_id=guest.id)
            if random.random() < 0.6:
                update_guest_status(session, guest.id, event.id, GuestStatus.JOINED)
        else:
            join_event(session, JoinRequest(event_id=event.id, user_id=guest.id))
        if random.random() < 0.3:
            update_guest_status(session, guest.id, event.id, GuestStatus.CHECKED_IN)
    return total

