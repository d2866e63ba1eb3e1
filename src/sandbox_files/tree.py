from __future__ import annotations

import posixpath
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace
from typing import Any, Literal

FileKind = Literal["file", "directory"]


@dataclass
class FileNode:
    name: str
    path: str
    kind: FileKind
    content: str | None = None
    children: list[FileNode] | None = None

    def to_dict(self, *, include_content: bool = True) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "path": self.path, "type": self.kind}
        if self.kind == "file":
            if include_content:
                out["content"] = self.content
        else:
            out["children"] = [
                c.to_dict(include_content=include_content) for c in (self.children or [])
            ]
        return out


def iter_nodes(nodes: Iterable[FileNode]) -> Iterator[FileNode]:
    for node in nodes:
        yield node
        if node.children:
            yield from iter_nodes(node.children)


def flatten_files(nodes: Iterable[FileNode]) -> list[FileNode]:
    return [n for n in iter_nodes(nodes) if n.kind == "file"]


def find_root_prefix(nodes: list[FileNode]) -> str | None:
    """'my-app/' when the whole project is nested in one top-level folder."""
    if len(nodes) == 1 and nodes[0].kind == "directory":
        return nodes[0].path + "/"
    return None


def to_mount_tree(nodes: Iterable[FileNode], strip_prefix: str | None = None) -> dict[str, Any]:
    """Convert the tree into the engine's nested mount shape."""
    fs_tree: dict[str, Any] = {}

    for node in iter_nodes(nodes):
        path = node.path
        if strip_prefix:
            if path + "/" == strip_prefix:
                continue
            if path.startswith(strip_prefix):
                path = path[len(strip_prefix) :]
        if not path:
            continue

        parts = path.split("/")
        current = fs_tree
        for part in parts[:-1]:
            entry = current.setdefault(part, {"directory": {}})
            if "directory" not in entry:
                break
            current = entry["directory"]
        else:
            name = parts[-1]
            if node.kind == "directory":
                current.setdefault(name, {"directory": {}})
            else:
                current[name] = {"file": {"contents": node.content or ""}}

    return fs_tree


def _replace_in(nodes: list[FileNode], path: str, content: str) -> tuple[list[FileNode], bool]:
    out: list[FileNode] = []
    changed = False
    for node in nodes:
        if not changed and node.kind == "file" and node.path == path:
            out.append(replace(node, content=content))
            changed = True
        elif not changed and node.children:
            children, changed = _replace_in(node.children, path, content)
            out.append(replace(node, children=children) if changed else node)
        else:
            out.append(node)
    return out, changed


class ProjectFiles:
    """The user's project tree for the current session."""

    def __init__(self, nodes: list[FileNode] | None = None) -> None:
        self.nodes: list[FileNode] = list(nodes or [])

    @property
    def root_prefix(self) -> str | None:
        return find_root_prefix(self.nodes)

    def files(self) -> list[FileNode]:
        return flatten_files(self.nodes)

    def get(self, path: str) -> FileNode | None:
        for node in self.files():
            if node.path == path:
                return node
        return None

    def mounted_path(self, node_or_path: FileNode | str) -> str:
        """Path of a tree file relative to the mounted project root."""
        path = node_or_path.path if isinstance(node_or_path, FileNode) else node_or_path
        prefix = self.root_prefix
        if prefix and path.startswith(prefix):
            return path[len(prefix) :]
        return path

    def tree_path(self, mounted_path: str) -> str:
        prefix = self.root_prefix or ""
        return f"{prefix}{mounted_path.lstrip('/')}"

    def to_mount_tree(self) -> dict[str, Any]:
        return to_mount_tree(self.nodes, self.root_prefix)

    def resolve(self, candidate_path: str) -> FileNode | None:
        """Find the file an error path refers to.

        Tried in order: exact path, path suffix, root-stripped path contained in
        the candidate, then bare file name. Only files with content qualify.
        """
        candidate = (candidate_path or "").strip()
        if not candidate:
            return None
        files = [f for f in self.files() if f.content is not None]
        prefix = self.root_prefix or ""

        for f in files:
            if f.path == candidate:
                return f
        for f in files:
            if f.path.endswith(candidate):
                return f
        for f in files:
            stripped = f.path[len(prefix) :] if prefix and f.path.startswith(prefix) else f.path
            if stripped and stripped in candidate:
                return f
        name = posixpath.basename(candidate.split("?", 1)[0])
        if name:
            for f in files:
                if f.name == name:
                    return f
        return None

    def replace_content(self, path: str, content: str) -> bool:
        nodes, changed = _replace_in(self.nodes, path, content)
        if changed:
            self.nodes = nodes
        return changed

    def clear(self) -> None:
        self.nodes = []
