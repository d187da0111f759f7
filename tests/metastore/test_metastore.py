import pickle
from typing import Any, Callable, Dict, List, Optional

import pytest

from chainlink.cluster import ClusterBroadcaster, chain_state_path
from chainlink.events import LifecycleEvent
from chainlink.metastore.store import Metastore
from chainlink.metastore.structure import BASE_STRUCTURE


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeQueue:
    def __init__(self) -> None:
        self.items: List[bytes] = []

    def put(self, item: bytes) -> None:
        self.items.append(item)

    def get(self) -> Optional[bytes]:
        return self.items.pop(0) if self.items else None


class FakeKazooClient:
    """Flat path -> bytes store; only the calls Metastore makes."""

    def __init__(self) -> None:
        self.data: Dict[str, bytes] = {}
        self.queues: Dict[str, FakeQueue] = {}
        self.ensured: List[str] = []

    def ensure_path(self, path: str) -> None:
        self.ensured.append(path)

    def exists(self, path: str) -> bool:
        return path in self.data or any(p.startswith(path + "/") for p in self.data)

    def get(self, path: str):
        return self.data.get(path, b""), None

    def set(self, path: str, value: bytes) -> None:
        self.data[path] = value

    # noinspection PyUnusedLocal
    def create(self, path: str, value: bytes, makepath: bool = False) -> None:
        self.data[path] = value

    # noinspection PyUnusedLocal
    def delete(self, path: str, recursive: bool = False) -> None:
        for p in [p for p in self.data if p == path or p.startswith(path + "/")]:
            del self.data[p]

    def Queue(self, path: str) -> FakeQueue:
        return self.queues.setdefault(path, FakeQueue())


class FakeConnectionManager:
    """
    Stand-in for ZkConnectionManager. Like kazoo's DataWatch, a watch fires
    once on install with the current data (None when the node is absent),
    and again on every ``fire(path)``.
    """

    def __init__(self, client: FakeKazooClient) -> None:
        self.client = client
        self.watches: Dict[str, Callable[[Optional[bytes], str], bool]] = {}

    def watch_data(self, path: str, callback: Callable[[Optional[bytes], str], bool]):
        self.watches[path] = callback
        self.fire(path)
        return f"watch-{path}"

    def fire(self, path: str) -> None:
        callback = self.watches.get(path)
        if callback is not None and not callback(self.client.data.get(path), path):
            del self.watches[path]


@pytest.fixture
def fake_client():
    return FakeKazooClient()


@pytest.fixture
def connection(fake_client):
    return FakeConnectionManager(fake_client)


# ---------------------------------------------------------------------------
# Structure and keys
# ---------------------------------------------------------------------------


def test_init_ensures_default_structure(connection, fake_client):
    Metastore(connection)

    assert fake_client.ensured == list(BASE_STRUCTURE)


def test_group_prefixes_every_path(connection, fake_client):
    m = Metastore(connection, group="/g1/", base_structure=["/base", "nested/path"])
    m.update_key("foo", 42)

    assert fake_client.ensured == ["/g1/base", "/g1/nested/path"]
    assert "/g1/foo" in fake_client.data
    assert m.get_key("/foo") == 42


def test_update_key_pickles_and_overwrites(connection, fake_client):
    m = Metastore(connection)

    m.update_key("/chains/states/t1/c1", LifecycleEvent.CREATED)
    m.update_key("/chains/states/t1/c1", LifecycleEvent.UPDATED)

    assert fake_client.data["/chains/states/t1/c1"] == pickle.dumps(LifecycleEvent.UPDATED)
    assert m.get_key("/chains/states/t1/c1") is LifecycleEvent.UPDATED


def test_get_key_of_absent_or_empty_node(connection, fake_client):
    m = Metastore(connection)
    fake_client.data["/empty"] = b""

    assert m.get_key("/nope") is None
    assert m.get_key("/empty") is None


def test_custom_serialization(connection, fake_client):
    m = Metastore(connection, packb=lambda v: str(v).encode(), unpackb=lambda b: int(b.decode()))

    m.update_key("/num", 123)

    assert fake_client.data["/num"] == b"123"
    assert m.get_key("/num") == 123


def test_drop_key_is_recursive(connection, fake_client):
    m = Metastore(connection)
    m.update_key("/root/a", 1)
    m.update_key("/root/sub/b", 2)

    assert m.drop_key("/root") is True
    assert fake_client.data == {}
    assert m.drop_key("/root") is False


# ---------------------------------------------------------------------------
# Watches
# ---------------------------------------------------------------------------


def test_watch_waits_for_node_created_later(connection, fake_client):
    m = Metastore(connection, group="g")
    received: list[tuple[Any, str]] = []

    m.watch_with_callback("/foo", lambda value, path: received.append((value, path)) is None)

    assert "/g/foo" in connection.watches
    m.update_key("/foo", {"x": 1})
    connection.fire("/g/foo")

    assert received == [({"x": 1}, "/g/foo")]


def test_watch_ends_when_seen_node_is_deleted(connection, fake_client):
    m = Metastore(connection)
    m.update_key("/foo", 1)
    received: list[Any] = []

    m.watch_with_callback("/foo", lambda value, path: received.append(value) is None)
    m.drop_key("/foo")
    connection.fire("/foo")

    assert received == [1]
    assert connection.watches == {}


def test_watch_skips_empty_node(connection, fake_client):
    m = Metastore(connection)
    fake_client.data["/foo"] = b""
    received: list[Any] = []

    m.watch_with_callback("/foo", lambda value, path: received.append(value) is None)

    assert received == []
    assert "/foo" in connection.watches


def test_watch_ends_when_callback_returns_false(connection, fake_client):
    m = Metastore(connection)
    m.update_key("/foo", 1)

    m.watch_with_callback("/foo", lambda value, path: False)

    assert connection.watches == {}


def test_watch_chain_before_first_broadcast(connection, fake_client):
    broadcaster = ClusterBroadcaster(Metastore(connection))
    seen: list[LifecycleEvent] = []
    path = chain_state_path("t1", "c1")

    broadcaster.watch_chain("t1", "c1", lambda event: seen.append(event) is None)
    assert path in connection.watches

    broadcaster.broadcast("t1", "c1", LifecycleEvent.CREATED)
    connection.fire(path)
    broadcaster.broadcast("t1", "c1", LifecycleEvent.DELETED)
    connection.fire(path)

    assert seen == [LifecycleEvent.CREATED]
    assert connection.watches == {}


# ---------------------------------------------------------------------------
# Queues
# ---------------------------------------------------------------------------


def test_enqueue_and_dequeue(connection, monkeypatch):
    monkeypatch.setattr("chainlink.metastore.store.QUEUE_POLLING_S", 0.01)
    m = Metastore(connection, group="g")

    m.enqueue("/queue", {"x": 1})
    m.enqueue("/queue", {"x": 2})

    assert m.dequeue("/queue", timeout=1.0) == {"x": 1}
    assert m.dequeue("/queue", timeout=1.0) == {"x": 2}
    assert m.dequeue("/queue", timeout=0.05) is None
