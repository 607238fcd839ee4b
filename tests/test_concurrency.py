"""
Concurrent identify calls against one SQLite file.
"""

import threading
import time

from contact_store import CheckedContactStore, SqliteContactStore
from db_models import IdentifyRequest
from reconciler import Reconciler


def run_concurrently(reconciler, request, workers=8):
    barrier = threading.Barrier(workers)
    results = []
    errors = []

    def worker():
        barrier.wait()
        try:
            results.append(reconciler.identify(request))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    return results, errors


def test_unseen_pair_creates_one_primary(reconciler, store):
    results, errors = run_concurrently(
        reconciler, IdentifyRequest(email="biff@hillvalley.edu", phoneNumber="717171")
    )

    assert errors == []
    rows = store.find_by_value(email="biff@hillvalley.edu", phone="717171")
    assert len(rows) == 1
    assert rows[0].is_primary
    assert {r.primaryContactId for r in results} == {rows[0].id}


def test_concurrent_merge_demotes_once(reconciler, store, seed):
    older = seed("a@x", "1", minutes=0)
    newer = seed("b@x", "2", minutes=5)

    results, errors = run_concurrently(reconciler, IdentifyRequest(email="a@x", phoneNumber="2"))

    assert errors == []
    primaries = [c for c in store.find_by_value(email="a@x", phone="2") if c.is_primary]
    assert [c.id for c in primaries] == [older.id]
    assert {r.primaryContactId for r in results} == {older.id}
    assert newer.id in results[0].secondaryContactIds


def test_reconcilers_sharing_locks_serialize(sqlite_store):
    first = Reconciler(sqlite_store)
    second = Reconciler(sqlite_store, locks=first.locks)
    request = IdentifyRequest(email="jennifer@hillvalley.edu")
    barrier = threading.Barrier(2)

    def worker(reconciler):
        barrier.wait()
        reconciler.identify(request)

    threads = [threading.Thread(target=worker, args=(r,)) for r in (first, second)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(sqlite_store.find_by_value(email="jennifer@hillvalley.edu")) == 1


class PausingStore(SqliteContactStore):
    """Holds a lookup for one email open until the test lets it continue."""

    def __init__(self, db_path, pause_email):
        super().__init__(db_path)
        self.pause_email = pause_email
        self.looked_up = threading.Event()
        self.resume = threading.Event()

    def find_by_value(self, email=None, phone=None):
        found = super().find_by_value(email, phone)
        if email == self.pause_email:
            self.looked_up.set()
            self.resume.wait(timeout=10)
        return found


def test_merge_waits_for_unrelated_lookup_then_create(tmp_path):
    inner = PausingStore(str(tmp_path / "c.db"), pause_email="b@x")
    inner.init_schema()
    store = CheckedContactStore(inner)
    older = store.create("a@x", "1")
    newer = store.create("b@x", "2")
    reconciler = Reconciler(store, cascade=True)
    outcomes = {}

    def run(name, request):
        try:
            outcomes[name] = reconciler.identify(request)
        except Exception as e:
            outcomes[name] = e

    linker = threading.Thread(target=run, args=("link", IdentifyRequest(email="b@x", phoneNumber="9")))
    linker.start()
    assert inner.looked_up.wait(timeout=5)

    # shares no email or phone with the paused request
    merger = threading.Thread(target=run, args=("merge", IdentifyRequest(email="a@x", phoneNumber="2")))
    merger.start()
    time.sleep(0.2)
    assert "merge" not in outcomes

    inner.resume.set()
    linker.join(timeout=10)
    merger.join(timeout=10)

    linked = outcomes["link"]
    merged = outcomes["merge"]
    assert not isinstance(linked, Exception)
    assert not isinstance(merged, Exception)
    assert linked.primaryContactId == newer.id
    added = linked.secondaryContactIds[0]
    assert merged.primaryContactId == older.id
    assert merged.secondaryContactIds == [newer.id, added]
    assert all(c.linked_id == older.id for c in store.find_cluster(older.id)[1:])
