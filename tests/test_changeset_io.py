"""Tests for loading ChangeSet documents."""

import json

import pytest

from deplorch.changeset_io import load_changeset, parse_changeset
from deplorch.errors import InvalidChangeSetError

DOCUMENT = """
message: Add health endpoint
protected_paths: [config/secrets/]
ops:
  - path: src/health.py
    content: |
      def health():
          return "ok"
  - path: src/legacy.py
    delete: true
    replaced_by: src/health.py
"""


class TestParseChangeSet:
    def test_yaml_document(self):
        changeset = parse_changeset(DOCUMENT)

        assert changeset.message == "Add health endpoint"
        assert changeset.protected_paths == frozenset({"config/secrets/"})
        assert changeset.paths == ["src/health.py", "src/legacy.py"]
        assert changeset.ops[0].content.startswith("def health()")
        assert changeset.ops[1].delete
        assert changeset.ops[1].replaced_by == "src/health.py"
        changeset.validate()

    def test_json_document(self):
        text = json.dumps({"message": "m", "ops": [{"path": "./a.txt", "content": "x"}]})
        changeset = parse_changeset(text)
        assert changeset.paths == ["a.txt"]

    @pytest.mark.parametrize("text,match", [
        ("ops: [unclosed", "not valid YAML"),
        ("- just\n- a list\n", "must be a mapping"),
        ("message: m\n", "'ops' list"),
        ("message: m\nops:\n  - not-a-mapping\n", r"ops\[0\] must be a mapping"),
        ("message: m\nops:\n  - content: x\n", "missing 'path'"),
        ("message: m\nops:\n  - path: a\n    content: x\n    mode: 755\n", "unknown keys: mode"),
        ("message: m\nops:\n  - path: ../etc/passwd\n    content: x\n", "escapes the workspace"),
    ])
    def test_malformed(self, text, match):
        with pytest.raises(InvalidChangeSetError, match=match):
            parse_changeset(text)

    def test_content_file_needs_base_dir(self):
        with pytest.raises(InvalidChangeSetError, match="no base directory"):
            parse_changeset("message: m\nops:\n  - path: a\n    content_file: a.txt\n")


class TestLoadChangeSet:
    def test_content_file_resolved_next_to_document(self, tmp_path):
        (tmp_path / "assets").mkdir()
        (tmp_path / "assets" / "logo.svg").write_text("<svg/>")
        doc = tmp_path / "change.yaml"
        doc.write_text("message: Add logo\nops:\n  - path: static/logo.svg\n    content_file: assets/logo.svg\n")

        changeset = load_changeset(doc)

        assert changeset.ops[0].content == "<svg/>"

    def test_content_and_content_file_conflict(self, tmp_path):
        doc = tmp_path / "change.yaml"
        doc.write_text("message: m\nops:\n  - path: a\n    content: x\n    content_file: b\n")
        with pytest.raises(InvalidChangeSetError, match="both content and content_file"):
            load_changeset(doc)

    def test_missing_content_file(self, tmp_path):
        doc = tmp_path / "change.yaml"
        doc.write_text("message: m\nops:\n  - path: a\n    content_file: nope.txt\n")
        with pytest.raises(InvalidChangeSetError, match="unreadable"):
            load_changeset(doc)

    def test_missing_document(self, tmp_path):
        with pytest.raises(InvalidChangeSetError, match="Cannot read"):
            load_changeset(tmp_path / "absent.yaml")
