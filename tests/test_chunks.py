import io
import itertools
import os
import threading
import time

import pytest

from services.chunks import ChunkAssembler
from services.errors import AlreadyExists, InvalidRequest, NameInUse, NotFound, ParentMissing, PathEscape, TooLarge
from services.fileio import file_lock


PARTS = [b"alpha-", b"bravo-", b"charlie"]


@pytest.fixture
def assembler(root, tmp_path):
    return ChunkAssembler(root, str(tmp_path / "staging"))


def send(assembler, index, data=None, *, name="movie.mp4", dest="", total=3, relative_path=None):
    payload = PARTS[index] if data is None else data
    return assembler.receive(dest, name, index, total, io.BytesIO(payload), relative_path)


@pytest.mark.parametrize("order", list(itertools.permutations(range(3))))
def test_assembly_follows_index_order_not_arrival(root, root_dir, tmp_path, order):
    assembler = ChunkAssembler(root, str(tmp_path / "staging"))
    results = [send(assembler, i) for i in order]

    assert [r.finished for r in results] == [False, False, True]
    assert [r.received for r in results[:2]] == [1, 2]
    assert (root_dir / "movie.mp4").read_bytes() == b"".join(PARTS)
    assert results[-1].entry.path == "movie.mp4"


def test_duplicate_chunk_does_not_break_the_upload(assembler, root_dir):
    assert send(assembler, 2).received == 1
    assert send(assembler, 2).received == 1
    assert not send(assembler, 0).finished
    result = send(assembler, 1)

    assert result.finished
    assert result.total == 3
    assert (root_dir / "movie.mp4").read_bytes() == b"".join(PARTS)


def test_resent_chunk_replaces_the_slot(assembler, root_dir):
    send(assembler, 0, b"wrong-")
    send(assembler, 0)
    send(assembler, 1)
    send(assembler, 2)
    assert (root_dir / "movie.mp4").read_bytes() == b"".join(PARTS)


def test_concurrent_assembly_writes_once(assembler, root_dir):
    for i in range(3):
        assembler.store_chunk("", "movie.mp4", i, 3, io.BytesIO(PARTS[i]))

    barrier = threading.Barrier(2)
    results, errors = [], []

    def trigger():
        barrier.wait()
        try:
            results.append(assembler.assemble("", "movie.mp4"))
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=trigger) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    assert len(results) == 2
    assert all(r.finished for r in results)
    assert {r.entry.path for r in results} == {"movie.mp4"}
    assert sorted(os.listdir(str(root_dir))) == ["movie.mp4"]
    assert (root_dir / "movie.mp4").read_bytes() == b"".join(PARTS)


def test_assemble_without_upload(assembler):
    with pytest.raises(NotFound):
        assembler.assemble("", "nothing.bin")


def test_single_file_never_overwrites(assembler, root_dir):
    (root_dir / "movie.mp4").write_bytes(b"original")
    send(assembler, 0)
    send(assembler, 1)
    with pytest.raises(AlreadyExists):
        send(assembler, 2)
    assert (root_dir / "movie.mp4").read_bytes() == b"original"


def test_missing_destination_folder(assembler, tmp_path):
    with pytest.raises(ParentMissing):
        send(assembler, 0, dest="nope")
    assert os.listdir(str(tmp_path / "staging")) == []


def test_escaping_destination_is_refused_before_staging(assembler, root_dir, tmp_path):
    (tmp_path / "outside").mkdir()
    os.symlink(str(tmp_path / "outside"), str(root_dir / "link"))

    with pytest.raises(PathEscape):
        send(assembler, 0, dest="link")
    with pytest.raises(PathEscape):
        send(assembler, 0, relative_path="link/deeper/movie.mp4")

    assert os.listdir(str(tmp_path / "staging")) == []
    assert os.listdir(str(tmp_path / "outside")) == []


def test_folder_upload_through_a_file_is_refused(assembler, root_dir, tmp_path):
    (root_dir / "photos").write_bytes(b"not a folder")

    with pytest.raises(NameInUse):
        send(assembler, 0, relative_path="photos/movie.mp4")
    assert os.listdir(str(tmp_path / "staging")) == []


def test_folder_upload_creates_folders_and_disambiguates(assembler, root_dir):
    (root_dir / "photos" / "2024").mkdir(parents=True)
    (root_dir / "photos" / "2024" / "movie.mp4").write_bytes(b"existing")

    for i in range(3):
        result = send(assembler, i, dest="photos", relative_path="2024/movie.mp4")
    assert result.finished
    assert result.entry.path == "photos/2024/movie_1.mp4"
    assert (root_dir / "photos" / "2024" / "movie_1.mp4").read_bytes() == b"".join(PARTS)
    assert (root_dir / "photos" / "2024" / "movie.mp4").read_bytes() == b"existing"

    for i in range(3):
        result = send(assembler, i, dest="photos", relative_path="new/deeper")
    assert result.entry.path == "photos/new/deeper/movie.mp4"


def test_folder_upload_cannot_escape(assembler, root_dir):
    for i in range(3):
        result = send(assembler, i, relative_path="../../../tmp/x")
    assert result.entry.path == "tmp/x/movie.mp4"
    assert (root_dir / "tmp" / "x" / "movie.mp4").exists()


def test_total_mismatch(assembler):
    send(assembler, 1)
    with pytest.raises(InvalidRequest):
        send(assembler, 2, total=4)


def test_first_chunk_with_new_total_restarts(assembler, root_dir):
    send(assembler, 1, b"stale")
    send(assembler, 0, b"one", total=2)
    result = send(assembler, 1, b"two", total=2)
    assert result.finished
    assert (root_dir / "movie.mp4").read_bytes() == b"onetwo"


@pytest.mark.parametrize("index,total", [(-1, 3), (3, 3), (0, 0)])
def test_index_out_of_range(assembler, index, total):
    with pytest.raises(InvalidRequest):
        assembler.receive("", "movie.mp4", index, total, io.BytesIO(b"x"))


def test_chunk_size_limit(root, tmp_path):
    assembler = ChunkAssembler(root, str(tmp_path / "staging"), max_chunk_bytes=4)
    with pytest.raises(TooLarge):
        send(assembler, 0, b"too long")
    assert os.listdir(str(tmp_path / "staging")) == []


def test_purge_stale(assembler, tmp_path):
    send(assembler, 0)
    staging = tmp_path / "staging"
    assert assembler.purge_stale(3600) == 0

    old = time.time() - 7200
    for name in os.listdir(str(staging)):
        os.utime(str(staging / name), (old, old))

    assert assembler.purge_stale(3600) >= 1
    assert not [n for n in os.listdir(str(staging)) if not n.endswith(".lock")]
    with pytest.raises(NotFound):
        assembler.assemble("", "movie.mp4")


def test_upload_key_is_deterministic(assembler):
    a = assembler.upload_key("docs", "a.txt")
    assert a == assembler.upload_key("docs", "a.txt")
    assert a != assembler.upload_key("docs", "b.txt")
    assert a != assembler.upload_key("other", "a.txt")


def test_purge_removes_orphaned_locks_only_when_free(assembler, tmp_path):
    staging = tmp_path / "staging"
    lock = str(staging / "abandoned.lock")
    old = time.time() - 7200
    held = threading.Event()
    release = threading.Event()

    def holder():
        with file_lock(lock):
            held.set()
            release.wait(5)

    t = threading.Thread(target=holder)
    t.start()
    held.wait(5)
    os.utime(lock, (old, old))

    sweeper = threading.Thread(target=assembler.purge_stale, args=(3600,))
    sweeper.start()
    sweeper.join(0.3)
    assert sweeper.is_alive()
    assert os.path.exists(lock)

    release.set()
    t.join()
    sweeper.join(5)
    assert not os.path.exists(lock)


def test_purge_keeps_locks_of_live_uploads(assembler, tmp_path):
    send(assembler, 0)
    staging = tmp_path / "staging"
    [lock] = [n for n in os.listdir(str(staging)) if n.endswith(".lock")]
    old = time.time() - 7200
    os.utime(str(staging / lock), (old, old))

    assert assembler.purge_stale(3600) == 0
    assert (staging / lock).exists()
