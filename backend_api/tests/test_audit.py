"""
Audit chain integrity and the append-only guarantee.
"""

from types import SimpleNamespace

import pytest
from sqlalchemy import event as sqlalchemy_event
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.reporting import database
from src.reporting.database import lock_audit_log
from src.reporting.engine.audit import AuditRecorder, compute_entry_hash
from src.reporting.engine.errors import DependencyError, ImmutableRecordError
from src.reporting.models.orm_models import MetricObservation


def _populate(reporting_engine, event, venue, venue_admin):
    reporting_engine.ingest_metric(event.id, "electricity_consumption", 1800, None, venue_admin.id)
    reporting_engine.set_goal(venue.id, "electricity_consumption", 1500, "event", venue_admin.id)
    reporting_engine.generate_report(event.id, venue_admin.id)


def test_entries_are_hash_chained(reporting_engine, catalog, venue, event, venue_admin, audit_entries):
    _populate(reporting_engine, event, venue, venue_admin)

    entries = audit_entries()
    assert [e.action for e in entries] == ["metric_upsert", "goal_set", "report_generate"]
    assert entries[0].previous_hash is None
    for previous, current in zip(entries, entries[1:]):
        assert current.previous_hash == previous.entry_hash
    first = entries[0]
    assert first.entry_hash == compute_entry_hash(
        first.user_id, first.action, first.target_table, first.target_id,
        first.details, first.created_at, first.previous_hash,
    )


def test_chain_verifies_after_operations(reporting_engine, catalog, venue, event, venue_admin):
    _populate(reporting_engine, event, venue, venue_admin)

    result = reporting_engine.verify_audit_chain()

    assert result.valid is True
    assert result.entries_checked == 3
    assert result.first_invalid_id is None


def test_empty_chain_is_valid(db):
    result = AuditRecorder(db).verify_chain()
    assert result.valid is True
    assert result.entries_checked == 0


def test_tampering_is_detected(reporting_engine, db, catalog, venue, event, venue_admin, audit_entries):
    _populate(reporting_engine, event, venue, venue_admin)
    forged = audit_entries()[1]

    # Bypasses the ORM guards the way a direct database edit would
    db.execute(text("UPDATE audit_log SET details = :details WHERE id = :id"),
               {"details": '{"forged": true}', "id": forged.id})
    db.commit()

    result = reporting_engine.verify_audit_chain()
    assert result.valid is False
    assert result.first_invalid_id == forged.id
    assert result.entries_checked == 2


def test_audit_failure_rolls_back_the_mutation(reporting_engine, db, catalog, event, venue_admin, monkeypatch):
    def broken(self):
        raise SQLAlchemyError("audit table unavailable")

    monkeypatch.setattr(AuditRecorder, "_latest_hash", broken)

    with pytest.raises(DependencyError):
        reporting_engine.ingest_metric(event.id, "water_usage", 20000, None, venue_admin.id)

    db.expire_all()
    assert db.query(MetricObservation).count() == 0


def test_orm_update_of_audit_entry_is_refused(reporting_engine, db, catalog, event, venue_admin, audit_entries):
    reporting_engine.ingest_metric(event.id, "water_usage", 20000, None, venue_admin.id)
    [entry] = audit_entries()

    entry.action = "nothing_to_see"
    with pytest.raises(ImmutableRecordError):
        db.flush()


def test_orm_delete_of_audit_entry_is_refused(reporting_engine, db, catalog, event, venue_admin, audit_entries):
    reporting_engine.ingest_metric(event.id, "water_usage", 20000, None, venue_admin.id)
    [entry] = audit_entries()

    db.delete(entry)
    with pytest.raises(ImmutableRecordError):
        db.flush()


class _StatementLog:
    """Stands in for a session when only the emitted statements matter."""

    def __init__(self, dialect_name):
        self.dialect_name = dialect_name
        self.statements = []

    def get_bind(self):
        return SimpleNamespace(dialect=SimpleNamespace(name=self.dialect_name))

    def execute(self, statement, *args):
        self.statements.append(str(statement))


def test_chain_lock_is_a_table_lock_on_postgresql():
    postgres = _StatementLog("postgresql")
    lock_audit_log(postgres)
    assert postgres.statements == ["LOCK TABLE audit_log IN SHARE ROW EXCLUSIVE MODE"]

    sqlite = _StatementLog("sqlite")
    lock_audit_log(sqlite)
    assert sqlite.statements == []


def test_report_transaction_takes_chain_lock_before_first_read(reporting_engine, catalog, event, venue_admin,
                                                               monkeypatch):
    reporting_engine.ingest_metric(event.id, "water_usage", 20000, None, venue_admin.id)
    order = []
    monkeypatch.setattr(database, "lock_audit_log", lambda session: order.append("lock"))

    def record_statement(conn, cursor, statement, parameters, context, executemany):
        order.append(statement.split(None, 1)[0].upper())

    sqlalchemy_event.listen(database.engine, "before_cursor_execute", record_statement)
    try:
        reporting_engine.generate_report(event.id, venue_admin.id)
    finally:
        sqlalchemy_event.remove(database.engine, "before_cursor_execute", record_statement)

    assert order[0] == "lock"
    assert order.count("lock") == 1
    assert "SELECT" in order[1:]


def test_ingestion_locks_chain_only_at_audit_time(reporting_engine, catalog, event, venue_admin, monkeypatch):
    calls = []
    monkeypatch.setattr(database, "lock_audit_log", lambda session: calls.append(session))

    reporting_engine.ingest_metric(event.id, "water_usage", 20000, None, venue_admin.id)

    assert calls == []
