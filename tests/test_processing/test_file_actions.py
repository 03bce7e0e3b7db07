"""
Tests for file-action execution.
"""

import pytest

from mimir.core.models import (
    ActionSet,
    DeleteAction,
    DependencyAction,
    RenameAction,
    WriteAction,
)
from mimir.processing.file_actions import LocalFileActionExecutor, process_file_operations


class TestLocalFileActionExecutor:
    """Test writes, renames and deletes under a project root."""

    @pytest.mark.asyncio
    async def test_write_creates_parent_directories(self, tmp_path):
        executor = LocalFileActionExecutor(tmp_path)

        await executor.apply_write("src/pkg/a.py", "x = 1\n")

        assert (tmp_path / "src" / "pkg" / "a.py").read_text() == "x = 1\n"

    @pytest.mark.asyncio
    async def test_rename_and_delete(self, tmp_path):
        (tmp_path / "old.txt").write_text("data")
        executor = LocalFileActionExecutor(tmp_path)

        await executor.apply_rename("old.txt", "moved/new.txt")
        assert not (tmp_path / "old.txt").exists()
        assert (tmp_path / "moved" / "new.txt").read_text() == "data"

        await executor.apply_delete("moved/new.txt")
        assert not (tmp_path / "moved" / "new.txt").exists()

    def test_paths_outside_root_refused(self, tmp_path):
        executor = LocalFileActionExecutor(tmp_path / "project")

        with pytest.raises(PermissionError, match="escapes project root"):
            executor.resolve("../secrets.txt")

    def test_no_root_uses_path_as_given(self):
        assert str(LocalFileActionExecutor().resolve("a/b.txt")) == "a/b.txt"


class TestProcessFileOperations:
    """Test per-item outcomes."""

    @pytest.mark.asyncio
    async def test_each_action_reported(self, tmp_path):
        (tmp_path / "keep.txt").write_text("k")
        actions = ActionSet(
            write=[
                WriteAction(path="ok.txt", content="fine"),
                WriteAction(path="../escape.txt", content="nope"),
            ],
            rename=[RenameAction(from_path="missing.txt", to_path="other.txt")],
            delete=[DeleteAction(path="keep.txt")],
            add_dependency=[DependencyAction(name="rich", version="13.0", is_dev=True)],
        )

        results = await process_file_operations(actions, LocalFileActionExecutor(tmp_path))

        assert results["write"][0] == {"path": "ok.txt", "success": True}
        assert results["write"][1]["success"] is False
        assert "escapes project root" in results["write"][1]["error"]
        assert results["rename"][0]["success"] is False
        assert results["rename"][0]["from"] == "missing.txt"
        assert results["delete"] == [{"path": "keep.txt", "success": True}]
        assert results["dependency"] == [
            {
                "name": "rich",
                "version": "13.0",
                "is_dev": True,
                "success": True,
                "status": "recorded",
            }
        ]
        assert (tmp_path / "ok.txt").read_text() == "fine"
        assert not (tmp_path / "escape.txt").exists()
        assert not (tmp_path / "keep.txt").exists()

    @pytest.mark.asyncio
    async def test_empty_action_set(self, tmp_path):
        results = await process_file_operations(ActionSet(), LocalFileActionExecutor(tmp_path))

        assert results == {"write": [], "rename": [], "delete": [], "dependency": []}
