"""
ChangeSet schema - one atomic delivery unit of file mutations.

A ChangeSet is an ordered list of FileOps plus a commit message. Deletions
and their replacements must travel together: a ChangeSet that only removes
application files is rejected before anything is staged.
"""

from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Iterable, Optional

from deplorch.errors import InvalidChangeSetError


def normalize_path(path: str) -> str:
    """Normalize a workspace-relative path to POSIX form without a leading ./"""
    if not path or not path.strip():
        raise InvalidChangeSetError("File path must not be empty")
    posix = PurePosixPath(path.replace("\\", "/"))
    if posix.is_absolute() or ".." in posix.parts:
        raise InvalidChangeSetError(f"Path escapes the workspace: {path}")
    return str(posix)


def is_protected(path: str, protected_paths: Iterable[str]) -> bool:
    """
    Check if a path falls inside the protected subtree.

    Entries ending in "/" protect a directory and everything under it;
    other entries protect that exact file and, if it is a directory,
    its contents. Entries are normalized like op paths, so "./.platform/"
    and ".platform" protect the same subtree.
    """
    path = normalize_path(path)
    for protected in protected_paths:
        prefix = normalize_path(protected)
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False


@dataclass(frozen=True)
class FileOp:
    """
    A single file mutation.

    Attributes:
        path: Workspace-relative path
        content: New file content (None for deletions)
        delete: True to remove the file
        replaced_by: For deletions, the path written in the same ChangeSet
            that replaces this file (e.g. a rename target)
    """
    path: str
    content: Optional[str] = None
    delete: bool = False
    replaced_by: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "path", normalize_path(self.path))
        if self.delete and self.content is not None:
            raise InvalidChangeSetError(f"Delete of {self.path} must not carry content")
        if not self.delete and self.content is None:
            raise InvalidChangeSetError(f"Write of {self.path} requires content")
        if self.replaced_by is not None:
            if not self.delete:
                raise InvalidChangeSetError(f"replaced_by is only valid on deletions ({self.path})")
            object.__setattr__(self, "replaced_by", normalize_path(self.replaced_by))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"path": self.path}
        if self.delete:
            result["delete"] = True
            if self.replaced_by:
                result["replaced_by"] = self.replaced_by
        else:
            result["content"] = self.content
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileOp":
        return cls(
            path=data["path"],
            content=data.get("content"),
            delete=bool(data.get("delete", False)),
            replaced_by=data.get("replaced_by"),
        )


@dataclass(frozen=True)
class ChangeSet:
    """
    The set of file mutations applied in one delivery unit.

    Attributes:
        ops: Ordered file operations
        message: Commit message
        protected_paths: Paths this ChangeSet must never modify, in addition
            to whatever the SourceControl reports
    """
    ops: tuple[FileOp, ...]
    message: str
    protected_paths: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self):
        object.__setattr__(self, "ops", tuple(self.ops))
        object.__setattr__(self, "protected_paths", frozenset(self.protected_paths))

    @property
    def writes(self) -> tuple[FileOp, ...]:
        return tuple(op for op in self.ops if not op.delete)

    @property
    def deletes(self) -> tuple[FileOp, ...]:
        return tuple(op for op in self.ops if op.delete)

    @property
    def paths(self) -> list[str]:
        return [op.path for op in self.ops]

    def validate(self) -> None:
        """
        Validate the ChangeSet before anything is staged.

        Every deletion needs a replacement in the same unit: the path named
        by replaced_by, or else a write in the deleted file's directory.

        Raises:
            InvalidChangeSetError: Empty ops, missing message, or a deletion
                with no replacement in the same unit
        """
        if not self.ops:
            raise InvalidChangeSetError("ChangeSet has no file operations")
        if not self.message or not self.message.strip():
            raise InvalidChangeSetError("ChangeSet requires a commit message")

        written = {op.path for op in self.writes}
        written_dirs = {str(PurePosixPath(path).parent) for path in written}
        unreplaced = []
        for op in self.deletes:
            if op.replaced_by is not None:
                if op.replaced_by not in written:
                    raise InvalidChangeSetError(
                        f"Deletion of {op.path} names replacement {op.replaced_by}, "
                        f"which this ChangeSet does not write"
                    )
            elif str(PurePosixPath(op.path).parent) not in written_dirs:
                unreplaced.append(op.path)
        if unreplaced:
            raise InvalidChangeSetError(
                "ChangeSet deletes "
                + ", ".join(unreplaced)
                + " without adding or modifying a replacement"
            )

    def touched_protected(self, protected_paths: Iterable[str]) -> list[str]:
        """Return op paths that fall under any of the protected paths."""
        protected = set(protected_paths) | set(self.protected_paths)
        return [path for path in self.paths if is_protected(path, protected)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "ops": [op.to_dict() for op in self.ops],
            "protected_paths": sorted(self.protected_paths),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeSet":
        return cls(
            ops=tuple(FileOp.from_dict(op) for op in data.get("ops", [])),
            message=data.get("message", ""),
            protected_paths=frozenset(data.get("protected_paths", [])),
        )
