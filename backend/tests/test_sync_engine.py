"""Tests for reconciliation, single-message application and diff queries."""

import base64

import pytest
import pytest_asyncio

from syncvault.errors import ConflictError, HashMismatchError, NotFoundError, PathValidationError
from syncvault.files.models import ChangeType
from syncvault.files.service import FileService
from syncvault.sync.engine import SyncEngine, resolve_conflict
from syncvault.sync.models import DiffRequest, SyncMessage, SyncOperation, SyncState
from syncvault.sync.protocol import generate_diff, generate_hash

USER = "u@x.co"


@pytest_asyncio.fixture
async def engine(store, broadcaster) -> SyncEngine:
    return SyncEngine(FileService(store, broadcaster))


def _put(path: str, content: bytes) -> SyncMessage:
    return SyncMessage(
        operation=SyncOperation.CREATE,
        path=path,
        content=SyncMessage.encode_content(content),
        hash=generate_hash(content),
    )


async def _synced(engine: SyncEngine, files: dict) -> SyncState:
    """Store files on the server and return the checkpoint of a client that has them all."""
    for path, content in files.items():
        engine.store.store(USER, path, content)
    result = await engine.reconcile(USER, SyncState(), [])
    assert result.conflicts == []
    return result.state


@pytest.mark.asyncio
async def test_first_sync_sends_everything(engine: SyncEngine) -> None:
    """Empty checkpoint against a populated server: every file goes out as create."""
    engine.store.store(USER, "a.txt", b"a")
    engine.store.store(USER, "docs/b.txt", b"b")
    result = await engine.reconcile(USER, SyncState(), [])
    assert [(m.operation, m.path) for m in result.messages] == [
        (SyncOperation.CREATE, "a.txt"),
        (SyncOperation.CREATE, "docs/b.txt"),
    ]
    assert base64.b64decode(result.messages[0].content) == b"a"
    assert result.messages[0].hash == generate_hash(b"a")
    assert sorted(result.state.files) == ["a.txt", "docs/b.txt"]
    assert result.state.last_sync is not None


@pytest.mark.asyncio
async def test_unchanged_produces_no_messages(engine: SyncEngine) -> None:
    state = await _synced(engine, {"a.txt": b"a"})
    result = await engine.reconcile(USER, state, [])
    assert result.messages == []
    assert result.applied == []
    assert result.conflicts == []
    assert list(result.state.files) == ["a.txt"]


@pytest.mark.asyncio
async def test_server_changed_sends_update(engine: SyncEngine) -> None:
    state = await _synced(engine, {"a.txt": b"v1"})
    engine.store.store(USER, "a.txt", b"v2")
    result = await engine.reconcile(USER, state, [])
    [msg] = result.messages
    assert msg.operation == SyncOperation.UPDATE
    assert msg.content_bytes() == b"v2"
    assert result.state.files["a.txt"].hash == generate_hash(b"v2")


@pytest.mark.asyncio
async def test_server_deleted_sends_delete(engine: SyncEngine) -> None:
    state = await _synced(engine, {"a.txt": b"v1"})
    engine.store.delete(USER, "a.txt")
    result = await engine.reconcile(USER, state, [])
    assert [(m.operation, m.path) for m in result.messages] == [(SyncOperation.DELETE, "a.txt")]
    assert result.state.files == {}


@pytest.mark.asyncio
async def test_client_changed_is_applied_and_broadcast(engine: SyncEngine, broadcaster) -> None:
    """Client-only change is written to the server and announced to subscribers."""
    state = await _synced(engine, {"a.txt": b"v1"})
    sub = await broadcaster.register(user_id=USER)
    msg = SyncMessage(
        operation=SyncOperation.UPDATE,
        path="a.txt",
        content=SyncMessage.encode_content(b"v2"),
        hash=generate_hash(b"v2"),
    )
    result = await engine.reconcile(USER, state, [msg])
    assert result.applied == ["a.txt"]
    assert result.messages == []
    assert engine.store.get(USER, "a.txt") == b"v2"
    assert result.state.files["a.txt"].hash == generate_hash(b"v2")
    change = await sub.next()
    assert change.type == ChangeType.UPDATE
    assert change.file.path == "a.txt"


@pytest.mark.asyncio
async def test_client_create_and_delete(engine: SyncEngine) -> None:
    state = await _synced(engine, {"old.txt": b"old"})
    result = await engine.reconcile(
        USER,
        state,
        [_put("new.txt", b"new"), SyncMessage(operation=SyncOperation.DELETE, path="old.txt")],
    )
    assert result.applied == ["new.txt", "old.txt"]
    assert engine.store.get(USER, "new.txt") == b"new"
    with pytest.raises(NotFoundError):
        engine.store.get(USER, "old.txt")
    assert list(result.state.files) == ["new.txt"]


@pytest.mark.asyncio
async def test_client_diff_applied_against_server_content(engine: SyncEngine) -> None:
    old, new = b"line one\nline two\n", b"line one\nline 2\n"
    state = await _synced(engine, {"notes.md": old})
    msg = SyncMessage(operation=SyncOperation.UPDATE, path="notes.md", diff=generate_diff(old, new))
    result = await engine.reconcile(USER, state, [msg])
    assert result.applied == ["notes.md"]
    assert engine.store.get(USER, "notes.md") == new


@pytest.mark.asyncio
async def test_conflict_is_reported_and_nothing_overwritten(engine: SyncEngine) -> None:
    """Both sides changed: server keeps its content, conflict names both hashes."""
    state = await _synced(engine, {"a.txt": b"base"})
    engine.store.store(USER, "a.txt", b"server")
    result = await engine.reconcile(USER, state, [_put("a.txt", b"client")])
    [conflict] = result.conflicts
    assert conflict.path == "a.txt"
    assert conflict.base_hash == generate_hash(b"base")
    assert conflict.client_hash == generate_hash(b"client")
    assert conflict.server_hash == generate_hash(b"server")
    assert result.messages == []
    assert result.applied == []
    assert engine.store.get(USER, "a.txt") == b"server"
    # Checkpoint keeps the last common version for the conflicted path
    assert result.state.conflicts == ["a.txt"]
    assert result.state.files["a.txt"].hash == generate_hash(b"base")


@pytest.mark.asyncio
async def test_both_sides_same_content_is_unchanged(engine: SyncEngine) -> None:
    state = await _synced(engine, {"a.txt": b"base"})
    engine.store.store(USER, "a.txt", b"same")
    result = await engine.reconcile(USER, state, [_put("a.txt", b"same")])
    assert result.conflicts == []
    assert result.messages == []
    assert result.state.files["a.txt"].hash == generate_hash(b"same")


@pytest.mark.asyncio
async def test_conflict_persists_until_resolved(engine: SyncEngine) -> None:
    """A conflicted path stays in conflict on later syncs even if only one side moves."""
    state = await _synced(engine, {"a.txt": b"base"})
    engine.store.store(USER, "a.txt", b"server")
    first = await engine.reconcile(USER, state, [_put("a.txt", b"client")])
    second = await engine.reconcile(USER, first.state, [])
    assert [c.path for c in second.conflicts] == ["a.txt"]
    assert second.messages == []

    meta = engine.store.get_info(USER, "a.txt")
    resolved = resolve_conflict(second.state, "a.txt", meta)
    assert resolved.conflicts == []
    assert resolved.files["a.txt"].hash == generate_hash(b"server")
    third = await engine.reconcile(USER, resolved, [])
    assert third.conflicts == []
    assert third.messages == []


@pytest.mark.asyncio
async def test_resolve_conflict_for_deleted_server_file(engine: SyncEngine) -> None:
    state = SyncState(conflicts=["gone.txt"])
    resolved = resolve_conflict(state, "gone.txt", None)
    assert resolved.conflicts == []
    assert "gone.txt" not in resolved.files


@pytest.mark.asyncio
async def test_rename_moves_on_server(engine: SyncEngine) -> None:
    state = await _synced(engine, {"a.txt": b"payload"})
    msg = SyncMessage(operation=SyncOperation.RENAME, path="a.txt", new_path="dir/b.txt")
    result = await engine.reconcile(USER, state, [msg])
    assert result.applied == ["dir/b.txt"]
    assert result.conflicts == []
    assert engine.store.get(USER, "dir/b.txt") == b"payload"
    assert sorted(result.state.files) == ["dir/b.txt"]


@pytest.mark.asyncio
async def test_rename_of_server_modified_file_conflicts(engine: SyncEngine) -> None:
    state = await _synced(engine, {"a.txt": b"v1"})
    engine.store.store(USER, "a.txt", b"v2")
    msg = SyncMessage(operation=SyncOperation.RENAME, path="a.txt", new_path="b.txt")
    result = await engine.reconcile(USER, state, [msg])
    assert [c.path for c in result.conflicts] == ["a.txt"]
    assert engine.store.get(USER, "a.txt") == b"v2"
    with pytest.raises(NotFoundError):
        engine.store.get(USER, "b.txt")


@pytest.mark.asyncio
async def test_invalid_change_applies_nothing(engine: SyncEngine) -> None:
    """One bad message rejects the whole batch before any mutation."""
    state = await _synced(engine, {})
    bad = SyncMessage(
        operation=SyncOperation.CREATE,
        path="b.txt",
        content=SyncMessage.encode_content(b"b"),
        hash=generate_hash(b"not b"),
    )
    with pytest.raises(HashMismatchError):
        await engine.reconcile(USER, state, [_put("a.txt", b"a"), bad])
    with pytest.raises(NotFoundError):
        engine.store.get(USER, "a.txt")

    with pytest.raises(PathValidationError):
        await engine.reconcile(USER, state, [_put("../escape.txt", b"x")])


@pytest.mark.asyncio
async def test_apply_message_create_and_rename(engine: SyncEngine) -> None:
    change = await engine.apply_message(USER, _put("a.txt", b"a"))
    assert change.type == ChangeType.CREATE
    moved = await engine.apply_message(
        USER, SyncMessage(operation=SyncOperation.RENAME, path="a.txt", new_path="b.txt")
    )
    assert moved.old_path == "a.txt"
    assert moved.file.path == "b.txt"
    deleted = await engine.apply_message(USER, SyncMessage(operation=SyncOperation.DELETE, path="b.txt"))
    assert deleted.type == ChangeType.DELETE


@pytest.mark.asyncio
async def test_apply_message_stale_diff_conflicts(engine: SyncEngine) -> None:
    """A diff made against content the server no longer has is a conflict."""
    engine.store.store(USER, "a.txt", b"server now\n")
    diff = generate_diff(b"client base\n", b"client new\n")
    msg = SyncMessage(operation=SyncOperation.UPDATE, path="a.txt", diff=diff)
    with pytest.raises(ConflictError) as excinfo:
        await engine.apply_message(USER, msg)
    assert excinfo.value.conflict.server_hash == generate_hash(b"server now\n")
    assert engine.store.get(USER, "a.txt") == b"server now\n"


@pytest.mark.asyncio
async def test_diff_query(engine: SyncEngine) -> None:
    engine.store.store(USER, "a.txt", b"current")
    same = await engine.diff(USER, DiffRequest(path="a.txt", hash=generate_hash(b"current")))
    assert same.has_changes is False
    assert same.content is None
    changed = await engine.diff(USER, DiffRequest(path="a.txt", hash=generate_hash(b"older")))
    assert changed.has_changes is True
    assert changed.new_hash == generate_hash(b"current")
    assert base64.b64decode(changed.content) == b"current"


@pytest.mark.asyncio
async def test_diff_query_missing_and_directory(engine: SyncEngine) -> None:
    assert (await engine.diff(USER, DiffRequest(path="nope.txt", hash="ab"))).has_changes is True
    assert (await engine.diff(USER, DiffRequest(path="nope.txt"))).has_changes is False
    engine.store.mkdir(USER, "docs")
    resp = await engine.diff(USER, DiffRequest(path="docs"))
    assert resp.has_changes is False
    assert resp.error


@pytest.mark.asyncio
async def test_rename_then_update_writes_new_content(engine: SyncEngine) -> None:
    """An edit after a rename in the same batch lands on the destination."""
    state = await _synced(engine, {"a.txt": b"old"})
    result = await engine.reconcile(
        USER,
        state,
        [
            SyncMessage(operation=SyncOperation.RENAME, path="a.txt", new_path="b.txt"),
            SyncMessage(
                operation=SyncOperation.UPDATE,
                path="b.txt",
                content=SyncMessage.encode_content(b"new"),
                hash=generate_hash(b"new"),
            ),
        ],
    )
    assert result.conflicts == []
    assert result.applied == ["b.txt"]
    assert engine.store.get(USER, "b.txt") == b"new"
    with pytest.raises(NotFoundError):
        engine.store.get(USER, "a.txt")
    assert list(result.state.files) == ["b.txt"]
    assert result.state.files["b.txt"].hash == generate_hash(b"new")


@pytest.mark.asyncio
async def test_update_then_rename_carries_content(engine: SyncEngine) -> None:
    """An edit before a rename travels with the file, diffs included."""
    old, new = b"line one\nline two\n", b"line one\nline 2\n"
    state = await _synced(engine, {"a.txt": old})
    result = await engine.reconcile(
        USER,
        state,
        [
            SyncMessage(operation=SyncOperation.UPDATE, path="a.txt", diff=generate_diff(old, new)),
            SyncMessage(operation=SyncOperation.RENAME, path="a.txt", new_path="dir/b.txt"),
        ],
    )
    assert result.conflicts == []
    assert result.applied == ["dir/b.txt"]
    assert engine.store.get(USER, "dir/b.txt") == new
    assert list(result.state.files) == ["dir/b.txt"]
    assert result.state.files["dir/b.txt"].hash == generate_hash(new)


@pytest.mark.asyncio
async def test_rename_with_update_of_server_modified_file_conflicts(engine: SyncEngine) -> None:
    """When the move cannot happen, the destination write is still applied and the source conflicts."""
    state = await _synced(engine, {"a.txt": b"v1"})
    engine.store.store(USER, "a.txt", b"server")
    result = await engine.reconcile(
        USER,
        state,
        [
            SyncMessage(operation=SyncOperation.RENAME, path="a.txt", new_path="b.txt"),
            _put("b.txt", b"client"),
        ],
    )
    assert [c.path for c in result.conflicts] == ["a.txt"]
    assert engine.store.get(USER, "a.txt") == b"server"
    assert engine.store.get(USER, "b.txt") == b"client"
    assert result.state.files["b.txt"].hash == generate_hash(b"client")


@pytest.mark.parametrize(
    "changes",
    [
        # same path twice
        [_put("a.txt", b"one"), _put("a.txt", b"two")],
        # new file at a path renamed away
        [
            SyncMessage(operation=SyncOperation.RENAME, path="a.txt", new_path="b.txt"),
            _put("a.txt", b"again"),
        ],
        # chained renames
        [
            SyncMessage(operation=SyncOperation.RENAME, path="a.txt", new_path="b.txt"),
            SyncMessage(operation=SyncOperation.RENAME, path="b.txt", new_path="c.txt"),
        ],
        # rename onto a path written earlier in the batch
        [
            _put("b.txt", b"b"),
            SyncMessage(operation=SyncOperation.RENAME, path="a.txt", new_path="b.txt"),
        ],
        # rename of a deleted file
        [
            SyncMessage(operation=SyncOperation.DELETE, path="a.txt"),
            SyncMessage(operation=SyncOperation.RENAME, path="a.txt", new_path="b.txt"),
        ],
    ],
)
@pytest.mark.asyncio
async def test_ambiguous_batches_rejected(engine: SyncEngine, changes) -> None:
    """Repeats that cannot be folded reject the whole batch before any write."""
    state = await _synced(engine, {"a.txt": b"orig"})
    with pytest.raises(PathValidationError):
        await engine.reconcile(USER, state, changes)
    assert engine.store.get(USER, "a.txt") == b"orig"
    with pytest.raises(NotFoundError):
        engine.store.get(USER, "b.txt")
