import glob
import json
import os
import threading

import pytest

from conftest import write
from services import trash as trash_module
from services.errors import InvalidRequest, IOFailure, TrashUnavailable
from services.paths import RootContext
from services.trash import TrashStore


def trash_one(trash, root, rel):
    report = trash.trash(root, [rel], deleted_by="10.0.0.7")
    assert not report.failed, report.failed
    return report.succeeded[0]["id"]


def age_rows(trash, seconds):
    with open(trash.ledger_path, encoding="utf-8") as f:
        rows = json.load(f)
    for row in rows:
        row["deletedAt"] -= seconds
    with open(trash.ledger_path, "w", encoding="utf-8") as f:
        json.dump(rows, f)


def test_trash_and_restore_round_trip(trash, root, root_dir):
    write(root_dir, "docs/report.txt", b"numbers")
    entry_id = trash_one(trash, root, "docs/report.txt")

    assert entry_id.startswith("trash_")
    assert not (root_dir / "docs" / "report.txt").exists()
    [entry] = trash.list()
    assert entry.original_path == "docs/report.txt"
    assert entry.original_name == "report.txt"
    assert entry.kind == "file"
    assert entry.size == 7
    assert entry.deleted_by == "10.0.0.7"

    report = trash.restore(root, [entry_id])

    assert report.succeeded == [{"id": entry_id, "name": "report.txt", "path": "docs/report.txt", "type": "file"}]
    assert (root_dir / "docs" / "report.txt").read_bytes() == b"numbers"
    assert trash.list() == []


def test_restore_to_reoccupied_path(trash, root, root_dir):
    write(root_dir, "docs/report.txt", b"old")
    entry_id = trash_one(trash, root, "docs/report.txt")
    write(root_dir, "docs/report.txt", b"new")

    report = trash.restore(root, [entry_id])

    assert report.succeeded[0]["path"] == "docs/report_restored_1.txt"
    assert (root_dir / "docs" / "report.txt").read_bytes() == b"new"
    assert (root_dir / "docs" / "report_restored_1.txt").read_bytes() == b"old"


def test_restore_recreates_missing_parents(trash, root, root_dir):
    write(root_dir, "a/b/c.txt", b"x")
    entry_id = trash_one(trash, root, "a/b/c.txt")
    os.rmdir(str(root_dir / "a" / "b"))
    os.rmdir(str(root_dir / "a"))

    trash.restore(root, [entry_id])

    assert (root_dir / "a" / "b" / "c.txt").read_bytes() == b"x"


def test_restore_with_missing_blob_drops_the_row(trash, root, root_dir):
    write(root_dir, "f.txt", b"x")
    entry_id = trash_one(trash, root, "f.txt")
    os.remove(os.path.join(trash.trash_dir, entry_id))

    report = trash.restore(root, [entry_id])

    assert report.succeeded == []
    assert report.failed[0].code == "not_found"
    assert trash.list() == []


def test_restore_unknown_ids(trash, root):
    report = trash.restore(root, ["trash_missing", "../../etc", ""])
    assert report.attempted == 3
    assert {f.code for f in report.failed} == {"not_found"}


def test_bulk_trash_partial_success(trash, root, root_dir):
    write(root_dir, "a.txt", b"a")
    write(root_dir, "dir/b.txt", b"b")
    inputs = ["a.txt", "missing.txt", "", "dir", "../../etc/passwd"]

    report = trash.trash(root, inputs)

    assert report.attempted == len(inputs)
    assert sorted(i["path"] for i in report.succeeded) == ["a.txt", "dir"]
    assert len(report.failed) == 3
    for item in report.succeeded:
        assert os.path.lexists(os.path.join(trash.trash_dir, item["id"]))
        assert not os.path.lexists(os.path.join(str(root_dir), item["path"]))
    assert {e.id for e in trash.list()} == {i["id"] for i in report.succeeded}
    [folder] = [e for e in trash.list() if e.kind == "folder"]
    assert folder.size == 1


def test_bulk_restore_partial_success(trash, root, root_dir):
    write(root_dir, "a.txt", b"a")
    entry_id = trash_one(trash, root, "a.txt")

    report = trash.restore(root, [entry_id, "trash_nope"])

    assert report.outcome == "partial"
    assert (root_dir / "a.txt").exists()


def test_trash_symlink_without_following(trash, root, root_dir, tmp_path):
    outside = tmp_path / "outside.txt"
    outside.write_text("keep")
    os.symlink(str(outside), str(root_dir / "link"))

    entry_id = trash_one(trash, root, "link")
    trash.delete_permanently([entry_id])

    assert outside.read_text() == "keep"
    assert not os.path.lexists(str(root_dir / "link"))


def test_delete_permanently(trash, root, root_dir):
    write(root_dir, "dir/sub/f.txt", b"x")
    entry_id = trash_one(trash, root, "dir")

    report = trash.delete_permanently([entry_id])

    assert report.succeeded == [{"id": entry_id, "name": "dir", "type": "folder"}]
    assert not os.path.lexists(os.path.join(trash.trash_dir, entry_id))
    assert trash.list() == []
    assert trash.delete_permanently([entry_id]).failed[0].code == "not_found"


def test_empty_all(trash, root, root_dir):
    for name in ("a.txt", "b.txt", "c.txt"):
        write(root_dir, name, b"x")
    trash.trash(root, ["a.txt", "b.txt", "c.txt"])

    report = trash.empty_all()

    assert len(report.succeeded) == 3
    assert trash.list() == []
    assert sorted(os.listdir(trash.trash_dir)) == ["metadata.json", "metadata.lock"]


def test_cleanup_zero_days_removes_everything_now(trash, root, root_dir):
    write(root_dir, "projects/old/notes.md", b"# old")
    entry_id = trash_one(trash, root, "projects/old")

    report = trash.cleanup_older_than(0)

    assert [i["id"] for i in report.succeeded] == [entry_id]
    assert not os.path.lexists(os.path.join(trash.trash_dir, entry_id))
    assert trash.list() == []


def test_cleanup_respects_age(trash, root, root_dir):
    write(root_dir, "old.txt", b"x")
    old_id = trash_one(trash, root, "old.txt")
    age_rows(trash, 10 * 86400)
    write(root_dir, "new.txt", b"x")
    new_id = trash_one(trash, root, "new.txt")

    report = trash.cleanup_older_than(7)

    assert [i["id"] for i in report.succeeded] == [old_id]
    assert [e.id for e in trash.list()] == [new_id]
    with pytest.raises(InvalidRequest):
        trash.cleanup_older_than(-1)


def test_purge_expired_runs_at_most_once_per_interval(trash, root, root_dir):
    write(root_dir, "old.txt", b"x")
    trash_one(trash, root, "old.txt")
    age_rows(trash, 3 * 86400)

    assert trash.purge_expired(0) is None
    report = trash.purge_expired(1)
    assert report is not None and len(report.succeeded) == 1
    assert trash.purge_expired(1) is None


def test_list_is_newest_first(trash, root, root_dir):
    write(root_dir, "first.txt", b"1")
    first = trash_one(trash, root, "first.txt")
    age_rows(trash, 60)
    write(root_dir, "second.txt", b"2")
    second = trash_one(trash, root, "second.txt")

    assert [e.id for e in trash.list()] == [second, first]
    assert trash.get(first).original_name == "first.txt"
    assert trash.stats() == {"items": 2, "bytes": 2}


def test_corrupt_ledger_is_set_aside(trash, root, root_dir):
    with open(trash.ledger_path, "w", encoding="utf-8") as f:
        f.write("{not json")

    assert trash.list() == []
    assert glob.glob(trash.ledger_path + ".corrupt-*")

    write(root_dir, "f.txt", b"x")
    trash_one(trash, root, "f.txt")
    assert len(trash.list()) == 1


def test_ledger_write_failure_rolls_back(trash, root, root_dir, monkeypatch):
    write(root_dir, "f.txt", b"x")

    def failing_save(entries):
        raise IOFailure("disk full")

    monkeypatch.setattr(trash, "_save", failing_save)
    with pytest.raises(IOFailure):
        trash.trash(root, ["f.txt"])

    assert (root_dir / "f.txt").read_bytes() == b"x"


def test_refuses_to_trash_its_own_folder(root, root_dir):
    store = TrashStore(str(root_dir / "data" / "trash"))
    write(root_dir, "data/trash/leftover", b"x")

    report = store.trash(root, ["data", "data/trash", "data/trash/leftover"])

    assert report.succeeded == []
    assert {f.code for f in report.failed} == {"path_escape"}
    assert (root_dir / "data" / "trash").is_dir()


def test_refuses_folders_holding_internal_data(trash, root_dir):
    write(root_dir, "app/.data/x", b"x")
    ctx = RootContext.from_path(str(root_dir), reserved=[str(root_dir / "app" / ".data")])

    report = trash.trash(ctx, ["app", "app/.data"])

    assert [f.code for f in report.failed] == ["path_escape", "path_escape"]
    assert (root_dir / "app" / ".data" / "x").exists()
    assert trash.list() == []


def test_ledger_write_failure_undoes_restore(trash, root, root_dir, monkeypatch):
    write(root_dir, "f.txt", b"x")
    entry_id = trash_one(trash, root, "f.txt")

    def failing_save(entries):
        raise IOFailure("disk full")

    monkeypatch.setattr(trash, "_save", failing_save)
    with pytest.raises(IOFailure):
        trash.restore(root, [entry_id])
    monkeypatch.undo()

    assert not (root_dir / "f.txt").exists()
    assert [e.id for e in trash.list()] == [entry_id]
    assert trash.restore(root, [entry_id]).succeeded[0]["path"] == "f.txt"


def test_trash_on_another_filesystem(trash, root, monkeypatch):
    trash.check_filesystem(root)

    monkeypatch.setattr(trash_module, "_device", lambda path: 1 if path == root.path else 2)
    with pytest.raises(TrashUnavailable) as exc:
        trash.check_filesystem(root)
    assert "FILEBAY_TRASH_DIR" in exc.value.message


def test_concurrent_trash_keeps_every_row(trash, root, root_dir):
    names = [f"f{i}.txt" for i in range(20)]
    for n in names:
        write(root_dir, n, b"x")
    threads = [threading.Thread(target=trash.trash, args=(root, [n])) for n in names]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(e.original_path for e in trash.list()) == sorted(names)
