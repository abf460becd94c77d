"""
Load ChangeSets from YAML or JSON documents.

Document shape:

    message: "Add health endpoint"
    protected_paths: [config/secrets/]     # optional, on top of the platform's
    ops:
      - path: src/health.py
        content: |
          ...
      - path: static/logo.svg
        content_file: assets/logo.svg      # read relative to the document
      - path: src/legacy.py
        delete: true
        replaced_by: src/health.py         # optional

JSON is accepted as-is since it parses as YAML.
"""

from pathlib import Path
from typing import Any, Optional

import yaml

from deplorch.errors import InvalidChangeSetError
from deplorch.schemas import ChangeSet, FileOp

_OP_KEYS = {"path", "content", "content_file", "delete", "replaced_by"}


def _parse_op(index: int, raw: Any, base_dir: Optional[Path]) -> FileOp:
    if not isinstance(raw, dict):
        raise InvalidChangeSetError(f"ops[{index}] must be a mapping")
    unknown = set(raw) - _OP_KEYS
    if unknown:
        raise InvalidChangeSetError(f"ops[{index}] has unknown keys: {', '.join(sorted(unknown))}")
    if "path" not in raw:
        raise InvalidChangeSetError(f"ops[{index}] is missing 'path'")

    content = raw.get("content")
    if "content_file" in raw:
        if content is not None:
            raise InvalidChangeSetError(f"ops[{index}] sets both content and content_file")
        if base_dir is None:
            raise InvalidChangeSetError(f"ops[{index}] uses content_file but no base directory is known")
        source = base_dir / raw["content_file"]
        try:
            content = source.read_text(encoding="utf-8")
        except OSError as e:
            raise InvalidChangeSetError(f"ops[{index}] content_file unreadable: {e}") from e

    return FileOp(
        path=str(raw["path"]),
        content=content,
        delete=bool(raw.get("delete", False)),
        replaced_by=raw.get("replaced_by"),
    )


def parse_changeset(text: str, base_dir: Optional[Path | str] = None) -> ChangeSet:
    """
    Parse a ChangeSet document.

    Args:
        text: YAML or JSON document
        base_dir: Directory content_file entries are resolved against

    Returns:
        The parsed ChangeSet (structure checked; validate() is left to the
        gateway so validation errors surface in one place)

    Raises:
        InvalidChangeSetError: If the document is malformed
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise InvalidChangeSetError(f"ChangeSet is not valid YAML/JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidChangeSetError("ChangeSet document must be a mapping")

    raw_ops = data.get("ops")
    if not isinstance(raw_ops, list):
        raise InvalidChangeSetError("ChangeSet requires an 'ops' list")

    base = Path(base_dir) if base_dir is not None else None
    return ChangeSet(
        ops=tuple(_parse_op(i, raw, base) for i, raw in enumerate(raw_ops)),
        message=str(data.get("message") or ""),
        protected_paths=frozenset(data.get("protected_paths") or []),
    )


def load_changeset(path: Path | str) -> ChangeSet:
    """Load a ChangeSet file; content_file entries resolve next to it."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise InvalidChangeSetError(f"Cannot read ChangeSet {path}: {e}") from e
    return parse_changeset(text, base_dir=path.parent)
