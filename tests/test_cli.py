import json
import pytest
import yaml
from click.testing import CliRunner
from deplorch.cli import main
from deplorch.gateway import RepositoryGateway, WorkspaceLocks
from deplorch.orchestrator import LifecycleOrchestrator
from deplorch.schemas import LifecycleSession, Phase
from deplorch.session_store import FileSessionStore

from fakes import make_changeset

MISSING_DEP_LOG = "Module not found: Error: Can't resolve 'dayjs' in '/app/src'"

@pytest.fixture
def runner():
    return CliRunner()

@pytest.fixture
def home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("DEPLORCH_HOME", str(home))
    (home / "config.yaml").write_text(yaml.dump({
        "github_repository": "acme/shop",
        "sessions_dir": str(home / "sessions"),
    }))
    return home

@pytest.fixture
def changeset_file(tmp_path):
    path = tmp_path / "change.yaml"
    path.write_text("message: Update app\nops:\n  - path: src/app.py\n    content: \"print('v2')\\n\"\n")
    return path

@pytest.fixture
def fake_orchestrator(monkeypatch, source_control, build_monitor, deploy_verifier, domain_verifier, corrector):
    """Route the CLI to an orchestrator built from fakes."""
    def build(config, workspace, store, listener):
        return LifecycleOrchestrator(
            workspace=workspace,
            gateway=RepositoryGateway(source_control),
            build_monitor=build_monitor,
            deploy_verifier=deploy_verifier,
            domain_verifier=domain_verifier,
            corrector=corrector,
            store=store,
            listener=listener,
            locks=WorkspaceLocks(),
        )
    monkeypatch.setattr("deplorch.cli._build_orchestrator", build)

def saved_session(home, phase=Phase.LIVE, **kwargs):
    session = LifecycleSession(
        session_id="01HZX3J5Q8ABCDEFGHJKMNPQRS",
        workspace="/srv/shop",
        changeset=make_changeset(),
        selector="app=shop",
        endpoint_url="https://shop.platform.test",
        phase=phase,
        **kwargs,
    )
    FileSessionStore(home / "sessions").save(session)
    return session

def test_init_command_creates_files(runner, tmp_path, monkeypatch):
    home = tmp_path / "custom_home"
    monkeypatch.setenv("DEPLORCH_HOME", str(home))

    result = runner.invoke(main, ["init"])
    assert result.exit_code == 0
    assert "Initialized deplorch config" in result.output

    assert (home / "config.yaml").exists()
    assert (home / ".env").exists()

    cfg = yaml.safe_load((home / "config.yaml").read_text())
    assert cfg["build_max_attempts"] == 3
    assert cfg["sessions_dir"] == str(home / "sessions")

def test_init_does_not_overwrite_without_force(runner, tmp_path, monkeypatch):
    home = tmp_path / "custom_home"
    monkeypatch.setenv("DEPLORCH_HOME", str(home))
    home.mkdir(parents=True)

    (home / "config.yaml").write_text("existing: true")

    result = runner.invoke(main, ["init"])
    assert result.exit_code == 1
    assert "Config already exists" in result.output

    assert (home / "config.yaml").read_text() == "existing: true"

def test_init_force_overwrites(runner, tmp_path, monkeypatch):
    home = tmp_path / "custom_home"
    monkeypatch.setenv("DEPLORCH_HOME", str(home))
    home.mkdir(parents=True)

    (home / "config.yaml").write_text("existing: true")

    result = runner.invoke(main, ["init", "--force"])
    assert result.exit_code == 0

    cfg = yaml.safe_load((home / "config.yaml").read_text())
    assert "build_timeout" in cfg

def test_command_without_config(runner, tmp_path, monkeypatch):
    monkeypatch.setenv("DEPLORCH_HOME", str(tmp_path / "empty"))
    result = runner.invoke(main, ["sessions", "list"])
    assert result.exit_code == 1
    assert "Config not loaded" in result.output
    assert "deplorch init" in result.output

def test_classify(runner, tmp_path, monkeypatch):
    monkeypatch.setenv("DEPLORCH_HOME", str(tmp_path / "empty"))
    log = tmp_path / "build.log"
    log.write_text(MISSING_DEP_LOG)
    result = runner.invoke(main, ["classify", str(log)])
    assert result.exit_code == 0
    assert result.output.strip() == "dependency_missing"

def test_deliver_live(runner, home, changeset_file, tmp_path, fake_orchestrator):
    result = runner.invoke(main, [
        "deliver", str(changeset_file),
        "-w", str(tmp_path),
        "-l", "app=shop",
        "--url", "https://shop.platform.test",
    ])
    assert result.exit_code == 0, result.output
    assert "✓ Live at https://shop.platform.test" in result.output

    sessions = FileSessionStore(home / "sessions").list_sessions()
    assert len(sessions) == 1
    assert sessions[0].phase == Phase.LIVE
    assert sessions[0].workspace == str(tmp_path.resolve())

def test_deliver_failed(runner, home, changeset_file, tmp_path, build_provider, fake_orchestrator):
    build_provider.outcomes = [("failed", MISSING_DEP_LOG)]
    result = runner.invoke(main, [
        "deliver", str(changeset_file),
        "-w", str(tmp_path),
        "-l", "app=shop",
        "--url", "https://shop.platform.test",
    ])
    assert result.exit_code == 1
    assert "✗ Failed" in result.output

def test_deliver_prints_domain_records(runner, home, changeset_file, tmp_path, fake_orchestrator):
    result = runner.invoke(main, [
        "deliver", str(changeset_file),
        "-w", str(tmp_path),
        "-l", "app=shop",
        "--url", "https://shop.platform.test",
        "--domain", "shop.example.com",
        "--domain-target", "edge.platform.test",
        "--domain-token", "tok-123",
    ])
    assert result.exit_code == 0, result.output
    assert "_deplorch-challenge.shop.example.com  tok-123" in result.output
    assert "edge.platform.test" in result.output

def test_deliver_domain_requires_target(runner, home, changeset_file, tmp_path, fake_orchestrator):
    result = runner.invoke(main, [
        "deliver", str(changeset_file),
        "-w", str(tmp_path),
        "-l", "app=shop",
        "--url", "https://shop.platform.test",
        "--domain", "shop.example.com",
    ])
    assert result.exit_code == 2
    assert "--domain-target" in result.output

def test_deliver_invalid_changeset(runner, home, tmp_path, fake_orchestrator):
    bad = tmp_path / "bad.yaml"
    bad.write_text("message: m\n")
    result = runner.invoke(main, [
        "deliver", str(bad), "-w", str(tmp_path), "-l", "app=shop", "--url", "https://x.test",
    ])
    assert result.exit_code == 1
    assert "'ops' list" in result.output

def test_resume_terminal_session(runner, home, fake_orchestrator):
    session = saved_session(home, live_url="https://shop.platform.test")
    result = runner.invoke(main, ["resume", session.session_id])
    assert result.exit_code == 0, result.output
    assert "✓ Live at https://shop.platform.test" in result.output

def test_resume_unknown_session(runner, home):
    result = runner.invoke(main, ["resume", "01NOPE"])
    assert result.exit_code == 1
    assert "Session not found" in result.output

def test_sessions_list_empty(runner, home):
    result = runner.invoke(main, ["sessions", "list"])
    assert result.exit_code == 0
    assert "No sessions found." in result.output

def test_sessions_show_json(runner, home):
    session = saved_session(home, revision_id="rev-1")
    result = runner.invoke(main, ["sessions", "show", session.session_id, "--json"])
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["phase"] == "live"
    assert data["revision_id"] == "rev-1"

def test_sessions_show(runner, home):
    session = saved_session(home, phase=Phase.FAILED, error={"type": "BuildUnfixableError", "message": "no fix"})
    result = runner.invoke(main, ["sessions", "show", session.session_id])
    assert result.exit_code == 0
    assert "Phase: failed" in result.output
    assert "Error: no fix" in result.output

def test_domain_verify_requires_live(runner, home, fake_orchestrator):
    session = saved_session(home, phase=Phase.FAILED)
    result = runner.invoke(main, ["domain", "verify", session.session_id])
    assert result.exit_code == 1
    assert "domain verification needs a Live session" in result.output
