"""Tests for the recycler used to clear node_modules quickly."""

import os

import pytest

from monolink.install.recycler import Recycler


class TestRecycler:
    """Move now, delete later."""

    def test_moves_then_deletes(self, tmp_path):
        target = tmp_path / "node_modules"
        (target / "pkg").mkdir(parents=True)
        (target / "pkg" / "index.js").write_text("", encoding="utf-8")
        recycler_folder = tmp_path / "recycler"

        with Recycler(str(recycler_folder)) as recycler:
            recycler.move_folder(str(target))
            assert not target.exists()
            assert len(os.listdir(recycler_folder)) == 1
        assert not recycler_folder.exists()

    def test_missing_folder_is_ignored(self, tmp_path):
        recycler = Recycler(str(tmp_path / "recycler"))
        recycler.move_folder(str(tmp_path / "nothing"))
        assert not (tmp_path / "recycler").exists()
        recycler.delete_all()

    def test_flushes_when_the_body_raises(self, tmp_path):
        target = tmp_path / "store"
        target.mkdir()
        with pytest.raises(RuntimeError):
            with Recycler(str(tmp_path / "recycler")) as recycler:
                recycler.move_folder(str(target))
                raise RuntimeError("install failed")
        assert not (tmp_path / "recycler").exists()
