"""Tests for root manager module."""

import pytest
import threading
from pathlib import Path

from src.watcher.root_manager import RootManager
from src.watcher.exceptions import RootNotFoundError, RootAlreadyExistsError


class TestRootManager:
    """Tests for RootManager class."""

    def test_create_empty_manager(self):
        manager = RootManager()
        assert len(manager) == 0
        assert manager.get_roots() == frozenset()

    def test_add_root_returns_canonical_path(self, tmp_path):
        manager = RootManager()
        result = manager.add_root(tmp_path / "." / "sub" / "..")

        assert result == tmp_path.resolve()
        assert tmp_path.resolve() in manager.get_roots()

    def test_add_nonexistent_root_raises(self):
        manager = RootManager()

        with pytest.raises(RootNotFoundError):
            manager.add_root(Path("/nonexistent/path/12345"))

    def test_add_file_as_root_raises(self, tmp_path):
        file_path = tmp_path / "file.txt"
        file_path.write_text("x")

        with pytest.raises(RootNotFoundError):
            RootManager().add_root(file_path)

    def test_add_nonexistent_root_allowed(self, tmp_path):
        manager = RootManager()
        nonexistent = tmp_path / "nonexistent"

        assert manager.add_root(nonexistent, must_exist=False) == nonexistent

    def test_add_duplicate_root_raises(self, tmp_path):
        manager = RootManager()
        manager.add_root(tmp_path)

        with pytest.raises(RootAlreadyExistsError):
            manager.add_root(tmp_path)

    def test_nested_root_rejected(self, tmp_path):
        inner = tmp_path / "inner"
        inner.mkdir()
        manager = RootManager()
        manager.add_root(tmp_path)

        with pytest.raises(RootAlreadyExistsError):
            manager.add_root(inner)

    def test_enclosing_root_rejected(self, tmp_path):
        inner = tmp_path / "inner"
        inner.mkdir()
        manager = RootManager()
        manager.add_root(inner)

        with pytest.raises(RootAlreadyExistsError):
            manager.add_root(tmp_path)

    def test_sibling_with_common_prefix_allowed(self, tmp_path):
        (tmp_path / "data").mkdir()
        (tmp_path / "data2").mkdir()
        manager = RootManager()
        manager.add_root(tmp_path / "data")
        manager.add_root(tmp_path / "data2")

        assert len(manager) == 2

    def test_find_root_for_path(self, tmp_path):
        root1 = tmp_path / "root1"
        root2 = tmp_path / "root2"
        root1.mkdir()
        root2.mkdir()

        manager = RootManager()
        manager.add_root(root1)
        manager.add_root(root2)

        assert manager.find_root_for_path(root1.resolve() / "deleted.txt") == root1.resolve()
        assert manager.find_root_for_path(root2.resolve() / "a" / "b") == root2.resolve()
        assert manager.find_root_for_path(tmp_path.resolve() / "other") is None

    def test_is_under_any_root(self, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        manager = RootManager()
        manager.add_root(root)

        assert manager.is_under_any_root(root.resolve() / "deep" / "file.txt") is True
        assert manager.is_under_any_root(tmp_path.resolve() / "file.txt") is False

    def test_contains(self, tmp_path):
        manager = RootManager()
        manager.add_root(tmp_path)

        assert tmp_path in manager
        assert (tmp_path / "subdir") not in manager

    def test_thread_safety(self, tmp_path):
        manager = RootManager()
        errors = []

        def add_roots():
            try:
                for i in range(10):
                    root = tmp_path / f"root_{threading.current_thread().name}_{i}"
                    root.mkdir(exist_ok=True)
                    manager.add_root(root)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=add_roots, name=f"t{i}") for i in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(errors) == 0
        assert len(manager) == 50
