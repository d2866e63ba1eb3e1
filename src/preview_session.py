from __future__ import annotations

import logging
from typing import Any

from src.sandbox_files.archive import extract_zip
from src.sandbox_files.policy import require_update_allowed
from src.sandbox_files.tree import FileNode, ProjectFiles, flatten_files
from src.sandbox_lifecycle.controller import SandboxLifecycleController
from src.sandbox_lifecycle.errors import SandboxError
from src.self_heal_loop import FixLogEntry, SelfHealingLoop

logger = logging.getLogger(__name__)

_ENTRY_FILE_NAMES = ("App.tsx", "App.jsx", "index.tsx", "index.jsx")


def pick_entry_file(nodes: list[FileNode]) -> FileNode | None:
    files = flatten_files(nodes)
    for f in files:
        if f.name in _ENTRY_FILE_NAMES:
            return f
    return files[0] if files else None


class PreviewSession:
    """One uploaded project and its preview run, wired to the self-healing loop."""

    def __init__(
        self,
        controller: SandboxLifecycleController,
        loop: SelfHealingLoop,
        files: ProjectFiles,
    ) -> None:
        self.controller = controller
        self.loop = loop
        self.files = files
        self.archive_name: str | None = None

    def load_archive(self, data: bytes, *, name: str | None = None) -> list[FileNode]:
        """Replace the current project with the contents of a zip archive.

        Raises `ArchiveError` for unreadable archives; the previous session is
        already reset by then.
        """
        self.reset()
        nodes = extract_zip(data)
        self.files.nodes = nodes
        self.archive_name = name
        logger.info("Loaded project %s with %d files", name or "<upload>", len(flatten_files(nodes)))
        return nodes

    async def start_run(self) -> bool:
        if not self.files.nodes:
            return False
        try:
            await self.controller.mount_files(self.files.to_mount_tree())
            await self.controller.start_dev_server()
        except SandboxError as exc:
            logger.warning("Preview run failed: %s", exc)
            return False
        return True

    async def update_file(self, path: str, content: str) -> bool:
        """Apply a user edit to the tree and, when running, to the live sandbox."""
        tree_path = require_update_allowed(path)
        if self.files.get(tree_path) is None:
            tree_path = self.files.tree_path(tree_path)
            if self.files.get(tree_path) is None:
                raise FileNotFoundError(path)
        self.files.replace_content(tree_path, content)
        if self.controller.instance is None:
            return True
        return await self.controller.update_file(self.files.mounted_path(tree_path), content)

    async def handle_runtime_message(self, payload: Any) -> FixLogEntry | None:
        return await self.loop.handle_runtime_message(payload)

    def reset(self) -> None:
        self.controller.reset()
        self.loop.reset()
        self.files.clear()
        self.archive_name = None

    def snapshot(self, *, include_content: bool = False) -> dict[str, Any]:
        entry = pick_entry_file(self.files.nodes)
        return {
            "sandbox": self.controller.snapshot(),
            "autoheal": self.loop.snapshot(),
            "project": {
                "name": self.archive_name,
                "root_prefix": self.files.root_prefix,
                "file_count": len(self.files.files()),
                "entry_file": entry.path if entry else None,
                "tree": [n.to_dict(include_content=include_content) for n in self.files.nodes],
            },
        }
