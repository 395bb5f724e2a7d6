"""In-memory filesystem tree used by the simulated shell."""

from __future__ import annotations

import enum
import fnmatch
import json
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

FILE_PERMISSIONS = "-rw-r--r--"
DIRECTORY_PERMISSIONS = "drwxr-xr-x"
DIRECTORY_SIZE = 4096
_MODE_BITS = ["---", "--x", "-w-", "-wx", "r--", "r-x", "rw-", "rwx"]


class FileSystemError(RuntimeError):
    """Base class for typed filesystem failures."""

    reason = "Filesystem error"

    def __init__(self, path: str) -> None:
        super().__init__(f"{path}: {self.reason}")
        self.path = path


class NoSuchFileError(FileSystemError):
    reason = "No such file or directory"


class IsADirectoryFsError(FileSystemError):
    reason = "Is a directory"


class NotADirectoryFsError(FileSystemError):
    reason = "Not a directory"


class FileExistsFsError(FileSystemError):
    reason = "File exists"


class NodeKind(str, enum.Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass
class FileMetadata:
    permissions: str
    owner: str = "user"
    group: str = "staff"
    size: int = 0
    modified_at: float = 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "permissions": self.permissions,
            "owner": self.owner,
            "group": self.group,
            "size": self.size,
            "modified_at": self.modified_at,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object], kind: NodeKind) -> "FileMetadata":
        default_permissions = DIRECTORY_PERMISSIONS if kind is NodeKind.DIRECTORY else FILE_PERMISSIONS
        return cls(
            permissions=str(payload.get("permissions") or default_permissions),
            owner=str(payload.get("owner") or "user"),
            group=str(payload.get("group") or "staff"),
            size=int(payload.get("size") or 0),
            modified_at=float(payload.get("modified_at") or 0.0),
        )


@dataclass
class FileNode:
    """A file or directory; files carry content, directories carry children."""

    name: str
    kind: NodeKind
    content: Optional[str] = None
    children: Optional[Dict[str, "FileNode"]] = None
    metadata: FileMetadata = field(default_factory=lambda: FileMetadata(FILE_PERMISSIONS))

    def __post_init__(self) -> None:
        if self.kind is NodeKind.FILE:
            if self.children is not None:
                raise ValueError(f"File node {self.name!r} cannot have children")
            if self.content is None:
                self.content = ""
        else:
            if self.content is not None:
                raise ValueError(f"Directory node {self.name!r} cannot have content")
            if self.children is None:
                self.children = {}

    @classmethod
    def file(cls, name: str, content: str = "", *, now: float = 0.0) -> "FileNode":
        metadata = FileMetadata(FILE_PERMISSIONS, size=len(content), modified_at=now)
        return cls(name=name, kind=NodeKind.FILE, content=content, metadata=metadata)

    @classmethod
    def directory(
        cls,
        name: str,
        children: Optional[Dict[str, "FileNode"]] = None,
        *,
        now: float = 0.0,
    ) -> "FileNode":
        metadata = FileMetadata(DIRECTORY_PERMISSIONS, size=DIRECTORY_SIZE, modified_at=now)
        return cls(name=name, kind=NodeKind.DIRECTORY, children=dict(children or {}), metadata=metadata)

    @property
    def is_file(self) -> bool:
        return self.kind is NodeKind.FILE

    @property
    def is_directory(self) -> bool:
        return self.kind is NodeKind.DIRECTORY

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "name": self.name,
            "kind": self.kind.value,
            "metadata": self.metadata.to_dict(),
        }
        if self.is_file:
            payload["content"] = self.content
        else:
            payload["children"] = {
                name: child.to_dict() for name, child in sorted((self.children or {}).items())
            }
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "FileNode":
        kind = NodeKind(str(payload.get("kind", "file")))
        metadata = FileMetadata.from_dict(dict(payload.get("metadata") or {}), kind)
        if kind is NodeKind.FILE:
            return cls(
                name=str(payload.get("name", "")),
                kind=kind,
                content=str(payload.get("content") or ""),
                metadata=metadata,
            )
        raw_children = payload.get("children") or {}
        children = {str(name): cls.from_dict(child) for name, child in dict(raw_children).items()}
        return cls(name=str(payload.get("name", "")), kind=kind, children=children, metadata=metadata)


@dataclass
class Resolution:
    """Outcome of resolving a path.

    ``node`` is the target when it exists. ``parent`` is the directory that
    holds (or would hold) the leaf; it is ``None`` when an intermediate
    segment is missing, which makes the path invalid rather than absent.
    """

    parent: Optional[FileNode]
    node: Optional[FileNode]
    name: str

    @property
    def exists(self) -> bool:
        return self.node is not None


def new_root(children: Optional[Dict[str, FileNode]] = None) -> FileNode:
    return FileNode.directory("/", children)


def split_path(path: str, cwd: str = "/") -> List[str]:
    """Return the normalized segments of *path* relative to the root."""

    raw = path if path.startswith("/") else f"{cwd.rstrip('/')}/{path}"
    segments: List[str] = []
    for part in raw.split("/"):
        if not part or part == ".":
            continue
        if part == "..":
            if segments:
                segments.pop()
            continue
        segments.append(part)
    return segments


def normalize_path(path: str, cwd: str = "/") -> str:
    return "/" + "/".join(split_path(path, cwd))


def relative_to(path: str, base: str) -> Optional[str]:
    """Return *path* relative to directory *base*, or ``None`` when outside."""

    base = base.rstrip("/") or "/"
    if base == "/":
        return path.lstrip("/") or None
    if path == base:
        return None
    prefix = base + "/"
    if not path.startswith(prefix):
        return None
    return path[len(prefix):]


def resolve_path(root: FileNode, path: str, cwd: str = "/") -> Resolution:
    segments = split_path(path, cwd)
    if not segments:
        return Resolution(parent=None, node=root, name="/")
    current = root
    for segment in segments[:-1]:
        child = (current.children or {}).get(segment)
        if child is None or not child.is_directory:
            return Resolution(parent=None, node=None, name=segments[-1])
        current = child
    leaf = segments[-1]
    return Resolution(parent=current, node=(current.children or {}).get(leaf), name=leaf)


def read_file(root: FileNode, path: str, cwd: str = "/") -> str:
    resolution = resolve_path(root, path, cwd)
    if resolution.node is None:
        raise NoSuchFileError(path)
    if resolution.node.is_directory:
        raise IsADirectoryFsError(path)
    return resolution.node.content or ""


def write_file(
    root: FileNode,
    path: str,
    content: str,
    cwd: str = "/",
    *,
    append: bool = False,
    now: float = 0.0,
) -> FileNode:
    """Create or update a file. Appends are joined with a newline."""

    resolution = resolve_path(root, path, cwd)
    node = resolution.node
    if node is not None and node.is_directory:
        raise IsADirectoryFsError(path)
    if node is None:
        if resolution.parent is None:
            raise NoSuchFileError(path)
        node = FileNode.file(resolution.name, content, now=now)
        resolution.parent.children[resolution.name] = node
        resolution.parent.metadata.modified_at = now
        return node
    if append and node.content:
        node.content = f"{node.content}\n{content}"
    else:
        node.content = content
    node.metadata.size = len(node.content)
    node.metadata.modified_at = now
    return node


def touch(root: FileNode, path: str, cwd: str = "/", *, now: float = 0.0) -> Tuple[FileNode, bool]:
    """Create an empty file or bump its timestamp; report whether it existed."""

    resolution = resolve_path(root, path, cwd)
    if resolution.node is not None:
        resolution.node.metadata.modified_at = now
        return resolution.node, True
    if resolution.parent is None:
        raise NoSuchFileError(path)
    node = FileNode.file(resolution.name, "", now=now)
    resolution.parent.children[resolution.name] = node
    return node, False


def make_directory(
    root: FileNode,
    path: str,
    cwd: str = "/",
    *,
    parents: bool = False,
    now: float = 0.0,
) -> FileNode:
    if parents:
        current = root
        for segment in split_path(path, cwd):
            child = current.children.get(segment)
            if child is None:
                child = FileNode.directory(segment, now=now)
                current.children[segment] = child
            elif not child.is_directory:
                raise NotADirectoryFsError(path)
            current = child
        return current
    resolution = resolve_path(root, path, cwd)
    if resolution.node is not None:
        raise FileExistsFsError(path)
    if resolution.parent is None:
        raise NoSuchFileError(path)
    node = FileNode.directory(resolution.name, now=now)
    resolution.parent.children[resolution.name] = node
    return node


def remove(root: FileNode, path: str, cwd: str = "/", *, recursive: bool = False) -> FileNode:
    """Detach a node from the tree and return it."""

    resolution = resolve_path(root, path, cwd)
    if resolution.node is None or resolution.parent is None:
        raise NoSuchFileError(path)
    if resolution.node.is_directory and not recursive:
        raise IsADirectoryFsError(path)
    return resolution.parent.children.pop(resolution.name)


def list_directory(root: FileNode, path: str, cwd: str = "/") -> List[Tuple[str, FileNode]]:
    resolution = resolve_path(root, path, cwd)
    if resolution.node is None:
        raise NoSuchFileError(path)
    if resolution.node.is_file:
        return [(resolution.node.name, resolution.node)]
    return sorted(resolution.node.children.items())


def iter_files(node: FileNode, prefix: str = "") -> Iterator[Tuple[str, FileNode]]:
    """Yield ``(relative_path, node)`` for every file below *node*, sorted."""

    if node.is_file:
        yield prefix or node.name, node
        return
    for name, child in sorted(node.children.items()):
        child_path = f"{prefix}/{name}" if prefix else name
        if child.is_directory:
            yield from iter_files(child, child_path)
        else:
            yield child_path, child


def find(root: FileNode, path: str, cwd: str = "/", pattern: Optional[str] = None) -> List[str]:
    resolution = resolve_path(root, path, cwd)
    if resolution.node is None:
        raise NoSuchFileError(path)
    results: List[str] = []

    def _walk(node: FileNode, shown: str) -> None:
        for name, child in sorted((node.children or {}).items()):
            child_shown = f"{shown.rstrip('/')}/{name}" if shown != "/" else f"/{name}"
            if pattern is None or fnmatch.fnmatchcase(name, pattern):
                results.append(child_shown)
            if child.is_directory:
                _walk(child, child_shown)

    _walk(resolution.node, path)
    return results


def chmod(root: FileNode, mode: str, path: str, cwd: str = "/", *, now: float = 0.0) -> FileNode:
    resolution = resolve_path(root, path, cwd)
    node = resolution.node
    if node is None:
        raise NoSuchFileError(path)
    prefix = "d" if node.is_directory else "-"
    current = node.metadata.permissions
    if mode.isdigit() and len(mode) in (3, 4):
        digits = mode[-3:]
        if any(int(digit) > 7 for digit in digits):
            raise ValueError(f"invalid mode: '{mode}'")
        node.metadata.permissions = prefix + "".join(_MODE_BITS[int(digit)] for digit in digits)
    elif mode in ("+x", "a+x", "u+x"):
        bits = list(current)
        targets = (3,) if mode == "u+x" else (3, 6, 9)
        for index in targets:
            bits[index] = "x"
        node.metadata.permissions = "".join(bits)
    elif mode in ("-x", "a-x", "u-x"):
        bits = list(current)
        targets = (3,) if mode == "u-x" else (3, 6, 9)
        for index in targets:
            bits[index] = "-"
        node.metadata.permissions = "".join(bits)
    else:
        raise ValueError(f"invalid mode: '{mode}'")
    node.metadata.modified_at = now
    return node


def serialize_tree(root: FileNode) -> str:
    return json.dumps(root.to_dict(), sort_keys=True, ensure_ascii=False)


def deserialize_tree(snapshot: str) -> FileNode:
    return FileNode.from_dict(json.loads(snapshot))


def snapshot_files(snapshot: str, work_tree: str) -> Dict[str, str]:
    """Map work-tree-relative file paths to contents inside a serialized tree."""

    root = deserialize_tree(snapshot)
    resolution = resolve_path(root, work_tree)
    if resolution.node is None or not resolution.node.is_directory:
        return {}
    return {path: node.content or "" for path, node in iter_files(resolution.node)}


__all__ = [
    "FileExistsFsError",
    "FileMetadata",
    "FileNode",
    "FileSystemError",
    "IsADirectoryFsError",
    "NoSuchFileError",
    "NodeKind",
    "NotADirectoryFsError",
    "Resolution",
    "chmod",
    "deserialize_tree",
    "find",
    "iter_files",
    "list_directory",
    "make_directory",
    "new_root",
    "normalize_path",
    "read_file",
    "relative_to",
    "remove",
    "resolve_path",
    "serialize_tree",
    "snapshot_files",
    "split_path",
    "touch",
    "write_file",
]
