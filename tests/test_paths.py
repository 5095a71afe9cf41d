import os

import pytest

from conftest import write
from services.errors import InvalidName, NotFound, PathEscape
from services.paths import (
    RootContext,
    guard_subtree,
    is_inside,
    join,
    parent_of,
    resolve,
    resolve_entry,
    sanitize,
    split,
    validate_name,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("", ""),
        (None, ""),
        ("/", ""),
        ("docs/report.txt", "docs/report.txt"),
        ("/docs//report.txt/", "docs/report.txt"),
        ("./docs/./report.txt", "docs/report.txt"),
        ("a/../b", "b"),
        ("a/b/../../c", "c"),
        ("../../etc/passwd", "etc/passwd"),
        ("..\\..\\windows\\system.ini", "windows/system.ini"),
        ("%2e%2e/%2e%2e/etc/passwd", "etc/passwd"),
        ("%252e%252e%252fetc", "etc"),
        ("docs%2freport.txt", "docs/report.txt"),
        ("a\x00b", "ab"),
        ("a%00b", "ab"),
        ("notes+ideas.txt", "notes+ideas.txt"),
        ("my file.txt", "my file.txt"),
    ],
)
def test_sanitize(raw, expected):
    assert sanitize(raw) == expected


@pytest.mark.parametrize(
    "raw",
    [
        "../../etc/passwd",
        "%252e%252e%252f%252e%252e%252fetc",
        "%25252e%25252e/x",
        "a/%2e%2e/%2e%2e/b",
        "\\..\\..\\x",
        "%2500%252e",
        "....//....//x",
        "%",
        "%zz/..",
    ],
)
def test_sanitize_is_idempotent(raw):
    once = sanitize(raw)
    assert sanitize(once) == once


def test_sanitize_output_has_no_dot_segments():
    for raw in ("../a", "a/..", "./.", "a/./b/../..", "%2e%2e%2f%2e%2e"):
        out = sanitize(raw)
        assert ".." not in out.split("/")
        assert "." not in out.split("/")
        assert not out.startswith("/")


def test_traversal_is_neutralized_not_resolved_outside(root):
    rel = sanitize("../../etc/passwd")
    assert rel == "etc/passwd"
    with pytest.raises(NotFound):
        resolve(root, rel)


def test_resolve_stays_inside_root(root, root_dir):
    write(root_dir, "docs/a.txt", b"x")
    segments = ["..", ".", "", "docs", "%2e%2e", "/", "\\..", "a.txt"]
    for a in segments:
        for b in segments:
            for c in segments:
                rel = sanitize(f"{a}/{b}/{c}")
                try:
                    ap = resolve(root, rel)
                except (NotFound, PathEscape):
                    continue
                assert root.contains(ap)


def test_resolve_root_and_child(root, root_dir):
    write(root_dir, "docs/a.txt", b"x")
    assert resolve(root, "") == root.path
    assert resolve(root, "docs/a.txt") == os.path.join(root.path, "docs", "a.txt")


def test_resolve_missing_allowed(root):
    ap = resolve(root, "new/file.txt", must_exist=False)
    assert ap == os.path.join(root.path, "new", "file.txt")


def test_symlink_out_of_root_is_an_escape(root, root_dir, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("s")
    os.symlink(str(outside), str(root_dir / "link"))
    with pytest.raises(PathEscape):
        resolve(root, "link")
    with pytest.raises(PathEscape):
        resolve(root, "link/secret.txt")


def test_symlink_inside_root_is_followed(root, root_dir):
    write(root_dir, "real/a.txt", b"x")
    os.symlink(str(root_dir / "real"), str(root_dir / "alias"))
    assert resolve(root, "alias/a.txt") == os.path.join(root.path, "real", "a.txt")


def test_resolve_entry_keeps_last_segment(root, root_dir, tmp_path):
    os.symlink(str(tmp_path / "nowhere"), str(root_dir / "dangling"))
    ap = resolve_entry(root, "dangling")
    assert ap == os.path.join(root.path, "dangling")
    assert os.path.islink(ap)
    assert resolve_entry(root, "") == root.path
    with pytest.raises(NotFound):
        resolve_entry(root, "missing")


def test_resolve_entry_parent_escape(root, root_dir, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "f").write_text("x")
    os.symlink(str(outside), str(root_dir / "out"))
    with pytest.raises(PathEscape):
        resolve_entry(root, "out/f")


def test_root_context(tmp_path):
    with pytest.raises(NotFound):
        RootContext.from_path(str(tmp_path / "missing"))
    ctx = RootContext.from_path(str(tmp_path))
    assert ctx.contains(os.path.join(ctx.path, "a", "b"))
    assert not ctx.contains(ctx.path + "-other")
    assert ctx.relative(os.path.join(ctx.path, "a", "b")) == "a/b"
    assert ctx.relative(ctx.path) == ""


def test_reserved_paths_are_unreachable(root_dir, tmp_path):
    write(root_dir, "app/.data/trash/metadata.json", b"[]")
    os.symlink(str(root_dir / "app" / ".data"), str(root_dir / "peek"))
    ctx = RootContext.from_path(str(root_dir), reserved=[str(root_dir / "app" / ".data"), str(tmp_path / "elsewhere")])

    assert ctx.reserved == (os.path.join(ctx.path, "app", ".data"),)
    assert resolve(ctx, "app") == os.path.join(ctx.path, "app")
    for rel in ("app/.data", "app/.data/trash/metadata.json", "app/.data/new", "peek/trash"):
        with pytest.raises(PathEscape):
            resolve(ctx, rel, must_exist=False)
    with pytest.raises(PathEscape):
        resolve_entry(ctx, "app/.data")

    with pytest.raises(PathEscape):
        guard_subtree(ctx, resolve_entry(ctx, "app"), "app")
    guard_subtree(ctx, resolve_entry(ctx, "peek"), "peek")


@pytest.mark.parametrize("bad", ["", "   ", ".", "..", "a/b", "a\\b", "a\x00b", None])
def test_validate_name_rejects(bad):
    with pytest.raises(InvalidName):
        validate_name(bad)


def test_validate_name_strips():
    assert validate_name("  report.txt ") == "report.txt"


def test_relative_path_helpers():
    assert split("a/b/c") == ("a/b", "c")
    assert split("c") == ("", "c")
    assert join("", "c") == "c"
    assert join("a/b", "c") == "a/b/c"
    assert parent_of("a/b") == "a"
    assert is_inside("a/b", "a")
    assert not is_inside("ab", "a")
    assert not is_inside("a", "a")
    assert is_inside("x", "")
    assert not is_inside("", "")
