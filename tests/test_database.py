"""
Tests for engine configuration and session handling.
"""
import uuid
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import select

from payment_settlement.database.connection import engine_options, is_sqlite
from payment_settlement.database.models import Order


class TestEngineOptions:
    """Test suite for engine_options."""

    @pytest.mark.unit
    def test_postgres_gets_pool_sizing(self, test_settings: Any) -> None:
        settings = test_settings.model_copy(
            update={"database_url": "postgresql+asyncpg://app@db/settlement"}
        )

        options = engine_options(settings)

        assert options["pool_size"] == settings.database_pool_size
        assert options["max_overflow"] == settings.database_max_overflow
        assert options["pool_pre_ping"] is True

    @pytest.mark.unit
    def test_sqlite_uses_default_pool(self, test_settings: Any) -> None:
        assert is_sqlite(test_settings.database_url)
        assert engine_options(test_settings) == {"echo": test_settings.database_echo}


class TestSavepoints:
    """Nested transactions on the SQLite test engine."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rolled_back_savepoint_keeps_outer_work(self, db: Any) -> None:
        kept = Order(
            id=uuid.uuid4(),
            user_id=uuid.uuid4(),
            order_number="ORD-KEPT",
            final_amount=Decimal("100.00"),
        )
        db.add(kept)
        await db.flush()

        with pytest.raises(RuntimeError):
            async with db.begin_nested():
                db.add(
                    Order(
                        id=uuid.uuid4(),
                        user_id=uuid.uuid4(),
                        order_number="ORD-DROPPED",
                        final_amount=Decimal("100.00"),
                    )
                )
                await db.flush()
                raise RuntimeError("abandon savepoint")

        await db.commit()

        numbers = (await db.execute(select(Order.order_number))).scalars().all()
        assert numbers == ["ORD-KEPT"]
