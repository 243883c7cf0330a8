"""Tests for database models and repository layer."""

import importlib.util
import re
from datetime import timedelta
from pathlib import Path

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError

from terminal_charges.database import (
    Base,
    Charge,
    ChargeRepository,
    ChargeStatusHistory,
    OrderPaymentStatus,
    OrderRepository,
    TerminalAssignmentRepository,
    WebhookEventRepository,
    create_async_engine,
    create_session_factory,
    generate_charge_id,
    get_database_url,
    session_scope,
    utcnow,
)
from terminal_charges.status import ChargeStatus

MIGRATION_FILE = (
    Path(__file__).resolve().parents[1]
    / "src" / "terminal_charges" / "database" / "migrations" / "versions" / "001_initial.py"
)


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(database_url="sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


async def _create_charge(session_factory, charge_id=None, transaction_id="txn_1", terminal_id="T1"):
    charge_id = charge_id or generate_charge_id()
    async with session_scope(session_factory) as session:
        await ChargeRepository(session).create(
            charge_id=charge_id,
            transaction_id=transaction_id,
            amount=5000,
            currency="cop",
            terminal_id=terminal_id,
            metadata={"pos_client": "scanner-app"},
        )
    return charge_id


class TestChargeIds:
    def test_format(self):
        assert re.match(r"^CHG_[0-9A-Z]+_[0-9A-Z]{9}$", generate_charge_id())

    def test_unique(self):
        assert len({generate_charge_id() for _ in range(1000)}) == 1000


class TestDatabaseUrl:
    def test_postgres_urls_use_asyncpg(self):
        assert get_database_url("postgres://u:p@db/x") == "postgresql+asyncpg://u:p@db/x"
        assert get_database_url("postgresql://u:p@db/x") == "postgresql+asyncpg://u:p@db/x"

    def test_default_is_local_sqlite(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert get_database_url().startswith("sqlite+aiosqlite://")


class TestChargeRepository:
    """Tests for the charge store."""

    async def test_create_records_initial_history(self, session_factory):
        charge_id = await _create_charge(session_factory)

        async with session_scope(session_factory) as session:
            repo = ChargeRepository(session)
            charge = await repo.get_by_id(charge_id)
            history = await repo.get_status_history(charge_id)

        assert charge.status == ChargeStatus.PENDING.value
        assert charge.currency == "COP"
        assert charge.poll_attempts == 0
        assert charge.reconciled is False
        assert charge.pos_client == "scanner-app"
        assert [(h.sequence, h.status, h.reason) for h in history] == [(1, "pending", "Charge initiated")]

    async def test_transition_appends_history(self, session_factory):
        charge_id = await _create_charge(session_factory)

        async with session_scope(session_factory) as session:
            changed = await ChargeRepository(session).add_status_history(
                charge_id,
                ChargeStatus.APPROVED,
                "Webhook payment.approved",
                {"status": "approved"},
                payment_details={"authorization_code": "AUTH1"},
            )
        assert changed

        async with session_scope(session_factory) as session:
            repo = ChargeRepository(session)
            charge = await repo.get_by_id(charge_id)
            history = await repo.get_status_history(charge_id)

        assert charge.status == "approved"
        assert charge.reconciled is True
        assert charge.payment_details == {"authorization_code": "AUTH1"}
        assert [h.sequence for h in history] == [1, 2]
        assert history[1].previous_status == "pending"
        assert history[1].raw_payload == {"status": "approved"}

    async def test_compare_and_set_rejects_stale_writer(self, session_factory):
        """Test only the writer that saw the expected status moves the charge."""
        charge_id = await _create_charge(session_factory)

        async with session_scope(session_factory) as session:
            assert await ChargeRepository(session).add_status_history(charge_id, ChargeStatus.DECLINED, "first")
        async with session_scope(session_factory) as session:
            assert not await ChargeRepository(session).add_status_history(charge_id, ChargeStatus.APPROVED, "second")

        async with session_scope(session_factory) as session:
            repo = ChargeRepository(session)
            charge = await repo.get_by_id(charge_id)
            history = await repo.get_status_history(charge_id)
        assert charge.status == "declined"
        assert len(history) == 2

    async def test_unknown_charge_transition(self, session_factory):
        async with session_scope(session_factory) as session:
            assert not await ChargeRepository(session).add_status_history("CHG_MISSING", ChargeStatus.ERROR, "x")

    async def test_history_sequence_is_unique(self, session_factory):
        charge_id = await _create_charge(session_factory)
        with pytest.raises(IntegrityError):
            async with session_scope(session_factory) as session:
                session.add(ChargeStatusHistory(charge_id=charge_id, sequence=1, status="approved"))

    async def test_record_poll_increments(self, session_factory):
        charge_id = await _create_charge(session_factory)
        for _ in range(3):
            async with session_scope(session_factory) as session:
                await ChargeRepository(session).record_poll(charge_id)

        async with session_scope(session_factory) as session:
            charge = await ChargeRepository(session).get_by_id(charge_id)
        assert charge.poll_attempts == 3
        assert charge.last_poll_at is not None

    async def test_list_pending_for_reconciliation(self, session_factory):
        old_id = await _create_charge(session_factory, transaction_id="old")
        done_id = await _create_charge(session_factory, transaction_id="done")
        async with session_scope(session_factory) as session:
            await ChargeRepository(session).add_status_history(done_id, ChargeStatus.APPROVED, "done")

        cutoff = utcnow() + timedelta(seconds=1)
        async with session_scope(session_factory) as session:
            pending = await ChargeRepository(session).list_pending_for_reconciliation(cutoff)
            assert [c.id for c in pending] == [old_id]

            too_early = utcnow() - timedelta(minutes=5)
            assert await ChargeRepository(session).list_pending_for_reconciliation(too_early) == []

    async def test_lookup_by_provider_and_transaction(self, session_factory):
        charge_id = await _create_charge(session_factory, transaction_id="order-9")
        async with session_scope(session_factory) as session:
            await ChargeRepository(session).set_provider_transaction_id(charge_id, "sim_abc")

        async with session_scope(session_factory) as session:
            repo = ChargeRepository(session)
            assert (await repo.get_by_provider_transaction_id("sim_abc")).id == charge_id
            assert [c.id for c in await repo.list_by_transaction("order-9")] == [charge_id]
            assert await repo.get_by_provider_transaction_id("sim_missing") is None


class TestChargeModel:
    def test_is_timed_out(self):
        now = utcnow()
        charge = Charge(status="pending", created_at=now - timedelta(seconds=121))
        assert charge.is_timed_out(now)
        assert not charge.is_timed_out(now, window=timedelta(minutes=5))

        charge.status = "approved"
        assert not charge.is_timed_out(now)


class TestWebhookEventRepository:
    async def test_duplicate_event_id(self, session_factory):
        async with session_scope(session_factory) as session:
            receipts = WebhookEventRepository(session)
            first = await receipts.record("payment.approved", "evt_1", "sim_1", None)
            assert first is not None
            assert await receipts.record("payment.approved", "evt_1", "sim_1", None) is None

    async def test_events_without_id_are_always_recorded(self, session_factory):
        async with session_scope(session_factory) as session:
            receipts = WebhookEventRepository(session)
            assert await receipts.record("payment.approved", None, "sim_1", None) is not None
            assert await receipts.record("payment.approved", None, "sim_1", None) is not None

    async def test_mark_processed(self, session_factory):
        async with session_scope(session_factory) as session:
            receipt = await WebhookEventRepository(session).record("payment.approved", "evt_1", "sim_1", None)
            receipt_id = receipt.id

        async with session_scope(session_factory) as session:
            receipts = WebhookEventRepository(session)
            assert [r.id for r in await receipts.list_unprocessed()] == [receipt_id]
            await receipts.mark_processed(receipt_id)

        async with session_scope(session_factory) as session:
            assert await WebhookEventRepository(session).list_unprocessed() == []


class TestTerminalAssignmentRepository:
    async def test_partial_unique_index_on_active_terminal(self, session_factory):
        """Test two active assignments of one terminal for one event cannot coexist."""
        async with session_scope(session_factory) as session:
            await TerminalAssignmentRepository(session).create("org_1", "user_1", "event_1", "T1")

        with pytest.raises(IntegrityError):
            async with session_scope(session_factory) as session:
                await TerminalAssignmentRepository(session).create("org_1", "user_2", "event_1", "T1")

    async def test_inactive_rows_do_not_count(self, session_factory):
        async with session_scope(session_factory) as session:
            repo = TerminalAssignmentRepository(session)
            await repo.create("org_1", "user_1", "event_1", "T1")
            assert await repo.deactivate_for_user("user_1", "event_1") == 1
            await repo.create("org_1", "user_1", "event_1", "T1")
            active = await repo.list_active_for_event("event_1")
        assert len(active) == 1


class TestOrderRepository:
    async def test_conditional_transition(self, session_factory):
        async with session_scope(session_factory) as session:
            order = await OrderRepository(session).create(unit_price=2500, quantity=2, order_id="order-1")
            assert order.total_amount == 5000

        async with session_scope(session_factory) as session:
            repo = OrderRepository(session)
            assert await repo.transition("order-1", "pending", "processing")
            assert not await repo.transition("order-1", "pending", "processing")

        async with session_scope(session_factory) as session:
            order = await OrderRepository(session).get("order-1")
        assert order.payment_status == OrderPaymentStatus.PROCESSING.value


class TestMigration:
    async def test_initial_migration_matches_models(self):
        """Test the migration creates every mapped table and can be reverted."""
        spec = importlib.util.spec_from_file_location("migration_001_initial", MIGRATION_FILE)
        migration = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(migration)

        engine = create_async_engine(database_url="sqlite+aiosqlite:///:memory:")

        def run(sync_conn, step):
            context = MigrationContext.configure(sync_conn)
            with Operations.context(context):
                step()
            return set(inspect(sync_conn).get_table_names())

        try:
            async with engine.begin() as conn:
                tables = await conn.run_sync(run, migration.upgrade)
            assert set(Base.metadata.tables) <= tables

            async with engine.begin() as conn:
                indexes = await conn.run_sync(
                    lambda c: {i["name"] for i in inspect(c).get_indexes("terminal_assignments")}
                )
            assert "uq_terminal_assignments_active_terminal" in indexes

            async with engine.begin() as conn:
                tables = await conn.run_sync(run, migration.downgrade)
            assert not tables & set(Base.metadata.tables)
        finally:
            await engine.dispose()
