"""Tests for the SQL store and the fire-and-forget persistence gateway."""

import threading
from datetime import timedelta

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from emd.models.alert_models import Alert, AlertRecord, Severity
from emd.models.cycle_models import ChangeRecord, ChangeType, FieldDiff, SystemMetricRecord
from emd.models.job_models import JobSnapshotRecord
from emd.persistence.gateway import PersistenceGateway
from emd.persistence.store import PersistKind, SQLModelStore

from conftest import START, FakeClock, FakeStore, make_job


@pytest.fixture()
def engine():
    """In-memory SQLite shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


def make_alert(**overrides) -> Alert:
    fields = {
        "fingerprint": "abc123abc123abc123abc123",
        "rule_id": "missing-assignment",
        "rule_name": "Missing Truck Assignment",
        "severity": Severity.HIGH,
        "message": "Job J1 is open but has no truck assigned",
        "entity_id": "J1",
        "created_at": START,
        "last_triggered_at": START,
    }
    fields.update(overrides)
    return Alert(**fields)


def history_payload(fetched_at, *changes):
    snapshots = {c.entity_id: make_job(c.entity_id, truck_id=None) for c in changes}
    return {"fetched_at": fetched_at, "changes": list(changes), "snapshots": snapshots}


def change(entity_id, change_type, *fields) -> ChangeRecord:
    return ChangeRecord(
        entity_id=entity_id,
        change_type=change_type,
        field_diffs=[FieldDiff(field=f, category="assignment") for f in fields],
        detected_at=START,
    )


def test_changes_are_recorded_with_type_and_fields(engine) -> None:
    store = SQLModelStore(engine)

    written = store.write(
        PersistKind.JOB_HISTORY,
        history_payload(
            START,
            change("J1", ChangeType.ADDED),
            change("J2", ChangeType.MODIFIED, "truck_id"),
        ),
    )

    assert written == 2
    with Session(engine) as session:
        rows = session.exec(select(JobSnapshotRecord).order_by(JobSnapshotRecord.entity_id)).all()
    assert [(r.entity_id, r.change_type) for r in rows] == [("J1", "added"), ("J2", "modified")]
    assert rows[1].changed_fields == ["truck_id"]
    assert rows[0].job_status == "open"
    assert rows[0].truck_id is None


def test_changes_without_a_snapshot_are_skipped(engine) -> None:
    payload = history_payload(START, change("J1", ChangeType.ADDED))
    payload["changes"].append(change("ghost", ChangeType.REMOVED))

    assert SQLModelStore(engine).write(PersistKind.JOB_HISTORY, payload) == 1


def test_purge_drops_history_older_than_cutoff(engine) -> None:
    store = SQLModelStore(engine)
    store.write(PersistKind.JOB_HISTORY, history_payload(START - timedelta(days=40), change("J1", ChangeType.ADDED)))
    store.write(PersistKind.JOB_HISTORY, history_payload(START, change("J1", ChangeType.MODIFIED, "status")))

    purged = store.write(PersistKind.HISTORY_PURGE, START - timedelta(days=30))

    assert purged == 1
    with Session(engine) as session:
        [row] = session.exec(select(JobSnapshotRecord)).all()
    assert row.change_type == "modified"


def test_alert_rows_are_upserted_by_fingerprint_and_creation(engine) -> None:
    store = SQLModelStore(engine)
    store.write(PersistKind.ALERT_DELTAS, [make_alert()])
    store.write(
        PersistKind.ALERT_DELTAS,
        [make_alert(acknowledged=True, acknowledged_by="ops", acknowledged_at=START)],
    )
    store.write(PersistKind.ALERT_DELTAS, [make_alert(created_at=START.replace(hour=13), last_triggered_at=START.replace(hour=13))])

    with Session(engine) as session:
        rows = session.exec(select(AlertRecord).order_by(AlertRecord.created_at)).all()
    assert len(rows) == 2
    assert rows[0].acknowledged
    assert rows[0].acknowledged_by == "ops"
    assert not rows[1].acknowledged


def test_concurrent_writes_of_one_alert_keep_one_row(engine) -> None:
    store = SQLModelStore(engine)
    errors = []

    def write(alert, barrier):
        barrier.wait()
        try:
            store.write(PersistKind.ALERT_DELTAS, [alert])
        except Exception as e:
            errors.append(e)

    for trial in range(20):
        created = START + timedelta(minutes=trial)
        fresh = make_alert(created_at=created, last_triggered_at=created)
        acked = make_alert(
            created_at=created,
            last_triggered_at=created,
            acknowledged=True,
            acknowledged_by="ops",
            acknowledged_at=created,
        )
        barrier = threading.Barrier(2)
        threads = [threading.Thread(target=write, args=(a, barrier)) for a in (fresh, acked)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    assert errors == []
    with Session(engine) as session:
        assert len(session.exec(select(AlertRecord)).all()) == 20


@pytest.mark.asyncio()
async def test_gateway_applies_writes_in_schedule_order(engine) -> None:
    gateway = PersistenceGateway(SQLModelStore(engine))

    gateway.persist(PersistKind.ALERT_DELTAS, [make_alert()])
    gateway.persist(
        PersistKind.ALERT_DELTAS,
        [make_alert(acknowledged=True, acknowledged_by="dispatcher", acknowledged_at=START)],
    )
    await gateway.drain()

    assert gateway.failed == 0
    with Session(engine) as session:
        [row] = session.exec(select(AlertRecord)).all()
    assert row.acknowledged_by == "dispatcher"


def test_cycle_metric_row(engine) -> None:
    SQLModelStore(engine).write(
        PersistKind.CYCLE_METRIC,
        {
            "component": "poller",
            "recorded_at": START,
            "success": True,
            "duration_ms": 12.5,
            "entity_count": 3,
            "alert_count": 1,
            "details": {"cycle": 1},
        },
    )
    with Session(engine) as session:
        row = session.exec(select(SystemMetricRecord)).one()
    assert row.details == {"cycle": 1}
    assert row.entity_count == 3


@pytest.mark.asyncio()
async def test_gateway_writes_in_background() -> None:
    store = FakeStore()
    gateway = PersistenceGateway(store)

    gateway.persist(PersistKind.CYCLE_METRIC, {"component": "poller"})
    await gateway.drain()

    assert store.kinds() == ["cycle_metric"]
    assert gateway.stats()["written"] == 1
    assert gateway.pending == 0


@pytest.mark.asyncio()
async def test_gateway_backs_off_exponentially(clock: FakeClock) -> None:
    store = FakeStore(fail=True)
    gateway = PersistenceGateway(store, backoff_seconds=5, backoff_max_seconds=8, clock=clock)

    gateway.persist(PersistKind.CYCLE_METRIC, {})
    await gateway.drain()
    assert gateway.suspended_until == START.replace(second=5)

    gateway.persist(PersistKind.CYCLE_METRIC, {})
    assert gateway.dropped == 1

    clock.advance(seconds=6)
    gateway.persist(PersistKind.CYCLE_METRIC, {})
    await gateway.drain()
    # Second failure doubles the delay, capped at 8s.
    assert (gateway.suspended_until - clock.now).total_seconds() == 8

    store.fail = False
    clock.advance(seconds=9)
    gateway.persist(PersistKind.CYCLE_METRIC, {})
    await gateway.drain()
    assert gateway.consecutive_failures == 0
    assert gateway.suspended_until is None


def test_disabled_gateway_is_a_no_op() -> None:
    gateway = PersistenceGateway(None)
    gateway.persist(PersistKind.CYCLE_METRIC, {})
    assert gateway.stats()["enabled"] is False
    assert gateway.pending == 0
