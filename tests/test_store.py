import pytest

from errors import NotFoundError, StaleDocumentError


def test_collection_subscription_gets_initial_and_later_snapshots(store):
    snapshots = []
    store.subscribe_collection("classes", snapshots.append)
    assert snapshots == [[]]

    store.create("classes", {"name": "중1_기본반", "time": "5:00"})
    assert len(snapshots) == 2
    assert snapshots[-1][0]["name"] == "중1_기본반"
    assert snapshots[-1][0]["version"] == 0


def test_document_subscription_reports_missing_document(store):
    seen = []
    store.subscribe_document("todos", "u1", seen.append)
    store.set("todos", "u1", {"dailyTodos": {"2025-09-01": ["채점"]}})
    store.delete("todos", "u1")
    assert seen[0] is None
    assert seen[1]["dailyTodos"] == {"2025-09-01": ["채점"]}
    assert seen[2] is None


def test_unsubscribe_stops_delivery(store):
    seen = []
    unsubscribe = store.subscribe_collection("users", seen.append)
    unsubscribe()
    store.create("users", {"name": "x"})
    assert len(seen) == 1
    assert store.listener_count == 0


def test_filtered_subscription(store):
    store.create("users", {"name": "a"}, doc_id="a")
    store.create("users", {"name": "b"}, doc_id="b")
    seen = []
    store.subscribe_collection("users", seen.append, {"_id": "b"})
    assert [d["name"] for d in seen[-1]] == ["b"]


def test_merge_set_keeps_other_fields(store):
    store.set("todos", "u1", {"dailyTodos": {}, "owner": "u1"})
    store.set("todos", "u1", {"dailyTodos": {"2025-09-02": ["상담"]}}, merge=True)
    doc = store.get("todos", "u1")
    assert doc["owner"] == "u1"
    assert doc["dailyTodos"] == {"2025-09-02": ["상담"]}


def test_update_bumps_version_and_checks_it(store):
    class_id = store.create("classes", {"name": "A", "time": "2:50"})
    store.update("classes", class_id, {"name": "B"}, expected_version=0)
    assert store.get("classes", class_id)["version"] == 1

    with pytest.raises(StaleDocumentError):
        store.update("classes", class_id, {"name": "C"}, expected_version=0)
    assert store.get("classes", class_id)["name"] == "B"


def test_update_missing_document(store):
    with pytest.raises(NotFoundError):
        store.update("classes", "nope", {"name": "x"}, expected_version=0)


def test_batch_commits_across_collections_and_notifies_once(store):
    store.create("classes", {"name": "A", "time": "1:00", "teacherId": "t1"}, doc_id="c1")
    seen = []
    store.subscribe_collection("classes", seen.append)

    batch = store.batch()
    batch.update("classes", "c1", {"teacherId": ""})
    batch.set("classes", "c2", {"name": "B", "time": "2:00"})
    batch.set("todos", "t1", {"dailyTodos": {}})
    assert len(batch) == 3
    batch.commit()

    assert len(seen) == 2
    assert store.get("classes", "c1")["teacherId"] == ""
    assert store.get("classes", "c1")["version"] == 1
    assert store.get("classes", "c2")["version"] == 0
    assert store.get("todos", "t1") is not None


def test_is_empty(store):
    assert store.is_empty("users")
    store.create("users", {"name": "a"})
    assert not store.is_empty("users")
