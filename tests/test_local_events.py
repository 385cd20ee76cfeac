from treesync.engine.models import LOCAL_TO_REMOTE, Priority


def _write(local, rel: str, data: bytes) -> str:
    path = local.root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return local.id_for_path(rel)


def _mkdir(local, rel: str) -> str:
    (local.root / rel).mkdir(parents=True)
    return local.id_for_path(rel)


def test_new_file_is_uploaded_once(service, remote, local):
    file_id = _write(local, "a.txt", b"alpha")

    task_id = service.local_events.on_file_added(file_id)
    task = service.queue.get(task_id)
    assert (task.action, task.direction, task.payload["path"], task.priority) == (
        "create", LOCAL_TO_REMOTE, "/root/a.txt", Priority.FILE,
    )

    service.run_worker(0)

    assert remote.data_of("/root/a.txt") == b"alpha"
    assert service.mappings.get_file(file_id).remote_path == "/root/a.txt"
    assert service.local_events.on_file_updated(file_id) is None


def test_edited_file_enqueues_update(service, local):
    file_id = _write(local, "a.txt", b"alpha")
    service.local_events.on_file_added(file_id)
    service.run_worker(0)

    (local.root / "a.txt").write_bytes(b"alpha v2")
    task_id = service.local_events.on_file_updated(file_id)

    assert service.queue.get(task_id).action == "update"


def test_thumbnail_priority(service, local):
    file_id = _write(local, "thumb.png", b"png")
    task_id = service.local_events.on_file_added(file_id, thumbnail=True)
    assert service.queue.get(task_id).priority == Priority.THUMBNAIL


def test_hidden_entries_are_ignored(service, local):
    hidden_file = _write(local, ".DS_Store", b"junk")
    nested = _write(local, ".git/config", b"[core]")

    assert service.local_events.on_file_added(hidden_file) is None
    assert service.local_events.on_file_added(nested) is None
    assert service.queue.stats()["total"] == 0


def test_downloaded_file_is_not_echoed(service, remote, local):
    remote.put_file("/root/from-cloud.txt", b"cloud")
    service.notify_change({"entries": [{"kind": "modified", "item_type": "file", "path": "/root/from-cloud.txt"}]})
    service.run_worker(0)

    local_id = local.id_for_path("from-cloud.txt")
    assert service.local_events.on_file_added(local_id) is None
    assert service.local_events.on_file_updated(local_id) is None


def test_folder_create_then_rename(service, remote, local):
    folder_id = _mkdir(local, "old")
    file_id = _write(local, "old/inner.txt", b"inner")
    service.local_events.on_folder_created(folder_id)
    service.local_events.on_file_added(file_id)
    service.run_worker(0)
    assert remote.data_of("/root/old/inner.txt") == b"inner"
    assert service.local_events.on_folder_created(folder_id) is None

    (local.root / "old").rename(local.root / "new")
    task_id = service.local_events.on_folder_renamed(folder_id)
    task = service.queue.get(task_id)
    assert task.payload == {"from_path": "/root/old", "path": "/root/new"}

    service.run_worker(0)

    assert remote.data_of("/root/new/inner.txt") == b"inner"
    assert service.mappings.get_folder(folder_id).remote_path == "/root/new"
    assert service.mappings.get_file(file_id).remote_path == "/root/new/inner.txt"


def test_file_rename_and_move(service, remote, local):
    _mkdir(local, "sub")
    file_id = _write(local, "a.txt", b"alpha")
    service.local_events.on_folder_created(local.id_for_path("sub"))
    service.local_events.on_file_added(file_id)
    service.run_worker(0)

    (local.root / "a.txt").rename(local.root / "b.txt")
    renamed = service.queue.get(service.local_events.on_file_moved(file_id))
    assert renamed.action == "rename"
    service.run_worker(0)
    assert remote.data_of("/root/b.txt") == b"alpha"

    (local.root / "b.txt").rename(local.root / "sub" / "b.txt")
    moved = service.queue.get(service.local_events.on_file_moved(file_id))
    assert moved.action == "move"
    assert moved.payload == {"from_path": "/root/b.txt", "path": "/root/sub/b.txt"}
    service.run_worker(0)
    assert remote.data_of("/root/sub/b.txt") == b"alpha"
    assert remote.data_of("/root/b.txt") is None


def test_deleted_file_is_removed_remotely(service, remote, local):
    file_id = _write(local, "a.txt", b"alpha")
    service.local_events.on_file_added(file_id)
    service.run_worker(0)

    local.delete_file(file_id)
    task_id = service.local_events.on_file_deleted(file_id)
    assert service.queue.get(task_id).payload == {"path": "/root/a.txt"}

    service.run_worker(0)

    assert remote.data_of("/root/a.txt") is None
    assert service.mappings.get_file(file_id) is None


def test_unmapped_delete_is_ignored(service):
    assert service.local_events.on_file_deleted("999") is None
    assert service.local_events.on_folder_deleted("999") is None


def test_reused_local_id_is_synced_as_a_new_file(service, remote, local):
    file_id = _write(local, "a.txt", b"AAA")
    service.local_events.on_file_added(file_id)
    service.run_worker(0)

    # a.txt goes away and the same id shows up again as b.txt with new bytes.
    service.local_events.on_file_deleted(file_id)
    (local.root / "a.txt").rename(local.root / "b.txt")
    (local.root / "b.txt").write_bytes(b"BBB")
    assert local.id_for_path("b.txt") == file_id

    task = service.queue.get(service.local_events.on_file_added(file_id))
    assert (task.action, task.payload) == ("create", {"path": "/root/b.txt"})
    service.run_worker(0)

    assert remote.data_of("/root/a.txt") is None
    assert remote.data_of("/root/b.txt") == b"BBB"
    assert service.mappings.get_file(file_id).remote_path == "/root/b.txt"


def test_update_at_unexpected_path_creates_instead_of_overwriting(service, remote, local):
    file_id = _write(local, "a.txt", b"AAA")
    service.local_events.on_file_added(file_id)
    service.run_worker(0)

    (local.root / "a.txt").rename(local.root / "c.txt")
    (local.root / "c.txt").write_bytes(b"CCC")

    task = service.queue.get(service.local_events.on_file_updated(file_id))
    assert (task.action, task.payload) == ("create", {"path": "/root/c.txt"})
    service.run_worker(0)

    assert remote.data_of("/root/a.txt") == b"AAA"
    assert remote.data_of("/root/c.txt") == b"CCC"
