import json

import pytest
from openpyxl import load_workbook

from busradar.errors import PersistenceError
from busradar.models import AuditLogEntry, Listing, Route
from busradar.storage import (
    AuditLog,
    JsonDocument,
    RouteRepository,
    SnapshotStore,
    resolve_data_dir,
)


def test_resolve_data_dir_handles_relative(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("BUSRADAR_DATA_DIR", raising=False)
    assert resolve_data_dir() == tmp_path / "data"
    assert resolve_data_dir("./state") == tmp_path / "state"


def test_snapshot_store_round_trip(tmp_path):
    store = SnapshotStore.in_dir(tmp_path)
    snapshots = {
        "1": [Listing(operator_name="ABC", price=900, seats="5 seats")],
        "2": [Listing(operator_name="XYZ", price=500)],
    }

    store.save(snapshots)

    assert store.load() == snapshots
    raw = json.loads((tmp_path / "bus_history.json").read_text(encoding="utf-8"))
    assert raw["1"] == [{"name": "ABC", "price": 900, "seats": "5 seats"}]


def test_snapshot_store_missing_or_corrupt_loads_empty(tmp_path):
    store = SnapshotStore.in_dir(tmp_path)
    assert store.load() == {}

    (tmp_path / "bus_history.json").write_text("{not json", encoding="utf-8")
    assert store.load() == {}

    (tmp_path / "bus_history.json").write_text("[1, 2]", encoding="utf-8")
    assert store.load() == {}


def test_snapshot_store_drops_malformed_rows(tmp_path):
    (tmp_path / "bus_history.json").write_text(
        json.dumps({
            "1": [
                {"name": "ABC", "price": 900, "seats": "5 seats"},
                {"name": "", "price": 100},
                {"name": "Bad", "price": "cheap"},
                "garbage",
            ]
        }),
        encoding="utf-8",
    )

    loaded = SnapshotStore.in_dir(tmp_path).load()

    assert loaded == {"1": [Listing(operator_name="ABC", price=900, seats="5 seats")]}


def test_json_document_write_failure_raises_persistence_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")
    document = JsonDocument(blocker / "doc.json")

    with pytest.raises(PersistenceError):
        document.write({"a": 1})


def test_json_document_write_leaves_no_temp_files(tmp_path):
    document = JsonDocument(tmp_path / "doc.json")
    document.write({"a": 1})
    document.write({"a": 2})

    assert document.read(default=None) == {"a": 2}
    assert [path.name for path in tmp_path.iterdir()] == ["doc.json"]


def test_audit_log_is_capped_most_recent_first(tmp_path):
    counter = iter(range(1000))
    log = AuditLog.in_dir(tmp_path, cap=5)
    log.clock = lambda: f"t{next(counter)}"

    for idx in range(8):
        log.log_activity(f"message {idx}", "new")

    entries = log.entries()
    assert len(entries) == 5
    assert [entry.message for entry in entries] == [
        "message 7", "message 6", "message 5", "message 4", "message 3",
    ]
    assert entries[0].timestamp == "t7"


def test_audit_log_extend_keeps_batch_order_on_top(tmp_path):
    log = AuditLog.in_dir(tmp_path, cap=3)
    log.log_activity("older", "new")
    log.extend([
        AuditLogEntry(timestamp="t2", message="first", type="price"),
        AuditLogEntry(timestamp="t1", message="second", type="seats"),
        AuditLogEntry(timestamp="t0", message="third", type="error"),
    ])

    assert [entry.message for entry in log.entries()] == ["first", "second", "third"]
    assert [entry.message for entry in log.entries(limit=2)] == ["first", "second"]


def test_audit_log_rejects_unknown_type(tmp_path):
    with pytest.raises(ValueError):
        AuditLog.in_dir(tmp_path).log_activity("oops", "debug")


def test_route_repository_create_list_delete(tmp_path):
    clock_values = iter([1700000000.0, 1700000000.0, 1700000005.0])
    repo = RouteRepository.in_dir(tmp_path)
    repo.clock = lambda: next(clock_values)

    first = repo.create("Bangalore to Chennai", "https://example.com/a")
    second = repo.create("Chennai to Madurai", "https://example.com/b", email="me@example.com")
    third = repo.create("Madurai to Trichy", "https://example.com/c")

    assert first.id == "1700000000000"
    assert second.id == "1700000000001"
    assert third.id == "1700000005000"
    assert [route.id for route in repo.list()] == [first.id, second.id, third.id]
    assert repo.get(second.id) == Route(
        id=second.id,
        name="Chennai to Madurai",
        url="https://example.com/b",
        email="me@example.com",
    )

    assert repo.delete(second.id) is True
    assert repo.delete(second.id) is False
    assert [route.id for route in repo.list()] == [first.id, third.id]


def test_route_repository_requires_name_and_url(tmp_path):
    repo = RouteRepository.in_dir(tmp_path)
    with pytest.raises(ValueError):
        repo.create("", "https://example.com")
    with pytest.raises(ValueError):
        repo.create("Name", "  ")
    assert repo.list() == []


def test_export_to_xlsx(tmp_path):
    store = SnapshotStore.in_dir(tmp_path)
    store.save({"1": [Listing(operator_name="ABC", price=900, seats="5 seats")]})
    routes = [Route(id="1", name="Bangalore to Chennai", url="https://example.com")]

    path = store.export_to_xlsx(tmp_path / "out" / "snapshots.xlsx", routes)

    sheet = load_workbook(path).active
    rows = list(sheet.iter_rows(values_only=True))
    assert rows[0] == ("route_id", "route_name", "operator", "price", "seats")
    assert rows[1] == ("1", "Bangalore to Chennai", "ABC", 900, "5 seats")
