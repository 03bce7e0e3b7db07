"""
File-action execution.

The core only requests file changes; an executor carries them out.
``LocalFileActionExecutor`` applies them to the local file system and
``process_file_operations`` runs every action independently, reporting a
per-item outcome instead of stopping at the first failure.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Protocol

from ..core.models import ActionSet

logger = logging.getLogger(__name__)


class FileActionExecutor(Protocol):
    """Anything that can apply write, rename and delete requests."""

    async def apply_write(self, path: str, content: str) -> None: ...

    async def apply_rename(self, from_path: str, to_path: str) -> None: ...

    async def apply_delete(self, path: str) -> None: ...


class LocalFileActionExecutor:
    """
    Applies file actions to the local file system.

    Relative paths resolve against ``root`` (the working directory when no
    root is given). With a root set, paths that resolve outside it are
    refused.
    """

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root).resolve() if root is not None else None

    def resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        if self.root is None:
            return candidate
        resolved = (self.root / candidate).resolve()
        if not resolved.is_relative_to(self.root):
            raise PermissionError(f"Path escapes project root: {path}")
        return resolved

    async def apply_write(self, path: str, content: str) -> None:
        await asyncio.to_thread(self._write, self.resolve(path), content)

    async def apply_rename(self, from_path: str, to_path: str) -> None:
        await asyncio.to_thread(self._rename, self.resolve(from_path), self.resolve(to_path))

    async def apply_delete(self, path: str) -> None:
        await asyncio.to_thread(self.resolve(path).unlink)

    @staticmethod
    def _write(target: Path, content: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    @staticmethod
    def _rename(source: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        source.rename(target)


async def process_file_operations(
    actions: ActionSet, executor: FileActionExecutor
) -> dict[str, list[dict[str, Any]]]:
    """
    Apply write, rename and delete actions; record dependency actions.

    Args:
        actions: Actions extracted from a response
        executor: Executor that performs the file changes

    Returns:
        ``{"write": [...], "rename": [...], "delete": [...], "dependency": [...]}``
        with ``success`` and, on failure, ``error`` per item
    """
    results: dict[str, list[dict[str, Any]]] = {
        "write": [],
        "rename": [],
        "delete": [],
        "dependency": [],
    }

    for write in actions.write:
        try:
            await executor.apply_write(write.path, write.content)
            results["write"].append({"path": write.path, "success": True})
        except Exception as e:
            logger.error(f"Error processing write operation for {write.path}: {e}")
            results["write"].append({"path": write.path, "success": False, "error": str(e)})

    for rename in actions.rename:
        item = {"from": rename.from_path, "to": rename.to_path}
        try:
            await executor.apply_rename(rename.from_path, rename.to_path)
            results["rename"].append({**item, "success": True})
        except Exception as e:
            logger.error(
                f"Error processing rename operation from {rename.from_path} "
                f"to {rename.to_path}: {e}"
            )
            results["rename"].append({**item, "success": False, "error": str(e)})

    for delete in actions.delete:
        try:
            await executor.apply_delete(delete.path)
            results["delete"].append({"path": delete.path, "success": True})
        except Exception as e:
            logger.error(f"Error processing delete operation for {delete.path}: {e}")
            results["delete"].append({"path": delete.path, "success": False, "error": str(e)})

    # Dependencies are left to a package-manager integration
    for dependency in actions.add_dependency:
        results["dependency"].append(
            {
                "name": dependency.name,
                "version": dependency.version,
                "is_dev": dependency.is_dev,
                "success": True,
                "status": "recorded",
            }
        )

    return results
