"""Tests for shuttle/remote_tree.py — directory chains and recursive removal."""

from __future__ import annotations

import pytest

from shuttle.remote_tree import (
    DIRECTORY_MODE,
    MAX_DEPTH,
    RemoteTreeError,
    ensure_directory_chain,
    remove_path_recursive,
)


class TestEnsureDirectoryChain:
    def test_creates_missing_prefixes(self, fake_sftp) -> None:
        ensure_directory_chain(fake_sftp, "/srv/app/static")
        for path in ("/srv", "/srv/app", "/srv/app/static"):
            assert fake_sftp.dirs[path] == DIRECTORY_MODE

    def test_existing_directories_untouched(self, fake_sftp) -> None:
        fake_sftp.add_dir("/srv/app")
        ensure_directory_chain(fake_sftp, "/srv/app/static")
        assert fake_sftp.dirs["/srv/app"] == 0o755
        assert fake_sftp.dirs["/srv/app/static"] == DIRECTORY_MODE

    def test_idempotent(self, fake_sftp) -> None:
        ensure_directory_chain(fake_sftp, "/srv/app")
        before = fake_sftp.tree()
        fake_sftp.calls.clear()
        ensure_directory_chain(fake_sftp, "/srv/app")
        assert fake_sftp.tree() == before
        assert fake_sftp.calls == [("stat", "/srv/app")]

    def test_file_in_chain_is_collision(self, fake_sftp) -> None:
        fake_sftp.add_file("/srv/app", b"x")
        with pytest.raises(RemoteTreeError, match="Path exists and is not a directory: /srv/app"):
            ensure_directory_chain(fake_sftp, "/srv/app/static")
        assert "/srv/app/static" not in fake_sftp.dirs

    def test_mkdir_failure_names_prefix(self, fake_sftp) -> None:
        fake_sftp.fail.add(("mkdir", "/srv"))
        with pytest.raises(RemoteTreeError, match="Failed to create directory: /srv"):
            ensure_directory_chain(fake_sftp, "/srv/app")


class TestRemovePathRecursive:
    def test_removes_single_file(self, fake_sftp) -> None:
        fake_sftp.add_file("/srv/a.txt", b"a")
        remove_path_recursive(fake_sftp, "/srv/a.txt")
        assert "/srv/a.txt" not in fake_sftp.files
        assert "/srv" in fake_sftp.dirs

    def test_removes_tree_depth_first(self, fake_sftp) -> None:
        fake_sftp.add_file("/srv/app/a.txt")
        fake_sftp.add_file("/srv/app/x/y/z.txt")
        fake_sftp.add_dir("/srv/app/empty")
        remove_path_recursive(fake_sftp, "/srv/app")
        assert fake_sftp.tree() == ({"/": 0o755, "/srv": 0o755}, {})

        rmdirs = [path for method, path in fake_sftp.calls if method == "rmdir"]
        assert rmdirs.index("/srv/app/x/y") < rmdirs.index("/srv/app/x") < rmdirs.index("/srv/app")

    def test_missing_path_is_success(self, fake_sftp) -> None:
        remove_path_recursive(fake_sftp, "/srv/ghost")
        assert fake_sftp.calls == [("stat", "/srv/ghost")]

    def test_idempotent(self, fake_sftp) -> None:
        fake_sftp.add_file("/srv/app/a.txt")
        remove_path_recursive(fake_sftp, "/srv/app")
        remove_path_recursive(fake_sftp, "/srv/app")
        assert "/srv/app" not in fake_sftp.dirs

    def test_child_failure_aborts(self, fake_sftp) -> None:
        fake_sftp.add_file("/srv/app/a.txt")
        fake_sftp.add_file("/srv/app/b.txt")
        fake_sftp.fail.add(("remove", "/srv/app/a.txt"))
        with pytest.raises(RemoteTreeError, match="Failed to delete file: /srv/app/a.txt"):
            remove_path_recursive(fake_sftp, "/srv/app")
        assert "/srv/app/b.txt" in fake_sftp.files
        assert "/srv/app" in fake_sftp.dirs

    def test_rmdir_failure(self, fake_sftp) -> None:
        fake_sftp.add_dir("/srv/app")
        fake_sftp.fail.add(("rmdir", "/srv/app"))
        with pytest.raises(RemoteTreeError, match="Failed to remove directory: /srv/app"):
            remove_path_recursive(fake_sftp, "/srv/app")

    def test_unlistable_unremovable_path(self, fake_sftp) -> None:
        fake_sftp.add_dir("/srv/locked")
        fake_sftp.fail.update({("listdir_attr", "/srv/locked"), ("rmdir", "/srv/locked")})
        with pytest.raises(RemoteTreeError, match="Failed to open or remove path: /srv/locked"):
            remove_path_recursive(fake_sftp, "/srv/locked")

    def test_depth_limit(self, fake_sftp) -> None:
        deep = "/d" + "/d" * (MAX_DEPTH + 1)
        fake_sftp.add_file(deep + "/leaf")
        with pytest.raises(RemoteTreeError, match="Maximum directory depth exceeded"):
            remove_path_recursive(fake_sftp, "/d")
        assert deep + "/leaf" in fake_sftp.files
