"""Seed three users whose items form a books -> electronics -> games cycle.

U1 offers a book and wants games, U2 offers a game and wants electronics,
U3 offers electronics and wants books.  No two of them want each other's
items, so only a 3-way opportunity can connect them.  Ids are derived from
names, so re-running the script is a no-op.
"""
import asyncio
import sys
import uuid
sys.path.insert(0, ".")

from app.database import async_session_factory, engine
from app.models.item import Item
from app.models.user import User

_NAMESPACE = uuid.UUID("6f1d9a52-3c1e-4b7a-9d0e-5a2b7c8e4f10")


def _id(name):
    return uuid.uuid5(_NAMESPACE, name)


DEMO_USERS = [
    {"name": "U1", "display_name": "Ada", "latitude": 52.5200, "longitude": 13.4050},
    {"name": "U2", "display_name": "Bo", "latitude": 52.5300, "longitude": 13.3900},
    {"name": "U3", "display_name": "Cy", "latitude": 52.5100, "longitude": 13.4200},
]

DEMO_ITEMS = [
    {"name": "I1", "owner": "U1", "title": "Dune (hardcover)", "category": "books",
     "condition": "like_new", "value_min": 20.0, "value_max": 30.0, "desired_categories": ["games"]},
    {"name": "I2", "owner": "U2", "title": "Board game bundle", "category": "games",
     "condition": "good", "value_min": 25.0, "value_max": 35.0, "desired_categories": ["electronics"]},
    {"name": "I3", "owner": "U3", "title": "Bluetooth speaker", "category": "electronics",
     "condition": "like_new", "value_min": 25.0, "value_max": 40.0, "desired_categories": ["books"]},
]


async def seed():
    async with async_session_factory() as session:
        for u in DEMO_USERS:
            if await session.get(User, _id(u["name"])) is None:
                session.add(User(
                    id=_id(u["name"]),
                    display_name=u["display_name"],
                    latitude=u["latitude"],
                    longitude=u["longitude"],
                ))
                print(f"  Seeded user {u['name']} ({u['display_name']})")
            else:
                print(f"  User {u['name']} already exists, skipping.")
        await session.flush()

        for i in DEMO_ITEMS:
            if await session.get(Item, _id(i["name"])) is None:
                session.add(Item(
                    id=_id(i["name"]),
                    user_id=_id(i["owner"]),
                    title=i["title"],
                    category=i["category"],
                    condition=i["condition"],
                    photos=[],
                    value_min=i["value_min"],
                    value_max=i["value_max"],
                    desired_categories=i["desired_categories"],
                ))
                print(f"  Seeded item {i['name']}: {i['category']} wants {i['desired_categories']}")
            else:
                print(f"  Item {i['name']} already exists, skipping.")
        await session.commit()
    await engine.dispose()
    print("Done seeding demo cycle. Run scripts/run_discovery.py to surface it.")


if __name__ == "__main__":
    asyncio.run(seed())
