"""Unit tests for the SQL graph store helpers (no database needed)."""
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from app.services.graph_store import SqlGraphStore, _item_node, advisory_lock_key
from app.utils.errors import ConflictError, TransientStoreError
from tests.fakes import T0


def _row(**overrides):
    values = dict(
        id=uuid.uuid4(),
        user_id=uuid.uuid4(),
        category="books",
        condition="good",
        desired_categories=["games"],
        created_at=T0,
        is_active=True,
        value_min=None,
        value_max=None,
        latitude=None,
        longitude=None,
        title="Dune",
        photos=["a.jpg", "b.jpg"],
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestAdvisoryLockKey:

    def test_order_independent(self):
        a, b = str(uuid.uuid4()), str(uuid.uuid4())
        assert advisory_lock_key(a, b) == advisory_lock_key(b, a)

    def test_fits_bigint(self):
        key = advisory_lock_key(str(uuid.uuid4()), str(uuid.uuid4()))
        assert -(2 ** 63) <= key < 2 ** 63

    def test_distinct_pairs_get_distinct_keys(self):
        ids = [str(uuid.uuid4()) for _ in range(3)]
        assert advisory_lock_key(ids[0], ids[1]) != advisory_lock_key(ids[0], ids[2])


class TestItemNode:

    def test_own_coordinates_win(self):
        node = _item_node(_row(latitude=1.0, longitude=2.0), 10.0, 20.0)
        assert (node.latitude, node.longitude) == (1.0, 2.0)

    def test_owner_location_fallback(self):
        node = _item_node(_row(), 10.0, 20.0)
        assert (node.latitude, node.longitude) == (10.0, 20.0)

    def test_fields(self):
        row = _row()
        node = _item_node(row, None, None)
        assert node.id == str(row.id)
        assert node.owner_id == str(row.user_id)
        assert node.desired_categories == frozenset({"games"})
        assert node.photos == ("a.jpg", "b.jpg")
        assert node.has_geo is False


class TestErrorTranslation:

    @pytest.mark.asyncio
    async def test_operational_error_becomes_transient(self):
        session = MagicMock()
        session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("gone")))
        store = SqlGraphStore(session)

        with pytest.raises(TransientStoreError) as exc:
            await store.pair_lock(str(uuid.uuid4()), str(uuid.uuid4()))
        assert exc.value.details == {"operation": "pair_lock"}

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        session = MagicMock()
        session.execute = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("fk")))
        store = SqlGraphStore(session)

        with pytest.raises(IntegrityError):
            await store.pair_lock(str(uuid.uuid4()), str(uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_non_uuid_ids_short_circuit(self):
        session = MagicMock()
        session.execute = AsyncMock()
        store = SqlGraphStore(session)

        assert await store.get_items(["not-a-uuid"]) == {}
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unique_violation_becomes_conflict(self):
        orig = Exception("duplicate key")
        orig.sqlstate = "23505"
        session = MagicMock()
        session.execute = AsyncMock(side_effect=IntegrityError("INSERT", {}, orig))
        store = SqlGraphStore(session)

        with pytest.raises(ConflictError):
            await store.pair_lock(str(uuid.uuid4()), str(uuid.uuid4()))
