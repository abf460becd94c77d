"""Tests for session storage backends."""

import re

import pytest

from deplorch.errors import SessionNotFoundError
from deplorch.schemas import LifecycleSession, Narration, Phase, RetryBudget
from deplorch.session_store import FileSessionStore, InMemorySessionStore, generate_ulid

from fakes import make_binding, make_changeset


def make_session(session_id=None, workspace="/srv/shop", phase=Phase.COMMITTING, **kwargs):
    return LifecycleSession(
        session_id=session_id or generate_ulid(),
        workspace=workspace,
        changeset=make_changeset(),
        selector="app=shop",
        endpoint_url="https://shop.platform.test",
        phase=phase,
        **kwargs,
    )


class TestGenerateUlid:
    def test_format(self):
        assert re.fullmatch(r"[0-9A-HJKMNP-TV-Z]{26}", generate_ulid())

    def test_unique(self):
        assert len({generate_ulid() for _ in range(100)}) == 100


@pytest.fixture(params=["memory", "file"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemorySessionStore()
    return FileSessionStore(tmp_path / "sessions")


class TestSessionStore:
    """Behavior shared by every backend."""

    def test_save_and_load(self, any_store):
        session = make_session(revision_id="abc123", domain=make_binding())
        session.build_budget.consume("abc123")
        session.narration.append(Narration(session_id=session.session_id, phase=Phase.COMMITTING, attempt=1, event="commit_started"))
        any_store.save(session)

        loaded = any_store.load(session.session_id)

        assert loaded.session_id == session.session_id
        assert loaded.revision_id == "abc123"
        assert loaded.domain.hostname == "shop.example.com"
        assert loaded.build_budget.used == 1
        assert loaded.narration[0].event == "commit_started"
        assert loaded.changeset == session.changeset

    def test_save_replaces(self, any_store):
        session = make_session()
        any_store.save(session)
        session.transition(Phase.BUILDING)
        any_store.save(session)

        assert any_store.load(session.session_id).phase == Phase.BUILDING
        assert len(any_store.list_sessions()) == 1

    def test_missing(self, any_store):
        assert any_store.get("01MISSING") is None
        with pytest.raises(SessionNotFoundError, match="01MISSING"):
            any_store.load("01MISSING")

    def test_active_for(self, any_store):
        running = make_session(phase=Phase.BUILDING)
        done = make_session(phase=Phase.LIVE)
        other = make_session(workspace="/srv/blog", phase=Phase.DEPLOYING)
        for s in (running, done, other):
            any_store.save(s)

        active = any_store.active_for("/srv/shop")
        assert [s.session_id for s in active] == [running.session_id]

    def test_delete(self, any_store):
        session = make_session()
        any_store.save(session)
        any_store.delete(session.session_id)
        any_store.delete(session.session_id)
        assert any_store.get(session.session_id) is None


class TestInMemorySessionStore:
    def test_snapshots_are_copies(self):
        store = InMemorySessionStore()
        session = make_session()
        store.save(session)

        session.transition(Phase.BUILDING)
        loaded = store.load(session.session_id)
        loaded.build_budget = RetryBudget(limit=1)

        assert store.load(session.session_id).phase == Phase.COMMITTING
        assert store.load(session.session_id).build_budget.limit == 3


class TestFileSessionStore:
    def test_one_json_file_per_session(self, tmp_path):
        store = FileSessionStore(tmp_path)
        session = make_session()
        store.save(session)

        assert (tmp_path / f"{session.session_id}.json").exists()
        assert not list(tmp_path.glob("*.tmp"))

    def test_survives_new_instance(self, tmp_path):
        session = make_session(phase=Phase.DEPLOYING, revision_id="r1")
        FileSessionStore(tmp_path).save(session)

        reopened = FileSessionStore(tmp_path)
        assert reopened.load(session.session_id).phase == Phase.DEPLOYING
