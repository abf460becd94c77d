import pytest

from deplorch.build_monitor import BuildMonitor
from deplorch.deploy_verifier import DeploymentVerifier
from deplorch.domain_verifier import DomainVerifier
from deplorch.gateway import RepositoryGateway, WorkspaceLocks
from deplorch.orchestrator import LifecycleOrchestrator
from deplorch.session_store import InMemorySessionStore

from fakes import (
    FakeBuildProvider,
    FakeClock,
    FakeProber,
    FakeRegistrar,
    FakeSourceControl,
    FakeWorkloadInspector,
    RecordingListener,
    ScriptedCorrector,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source_control():
    return FakeSourceControl(files={
        "src/app.py": "print('v1')\n",
        "package.json": "{}\n",
        ".platform/deploy.yaml": "replicas: 2\n",
    })


@pytest.fixture
def build_provider():
    return FakeBuildProvider()


@pytest.fixture
def inspector():
    return FakeWorkloadInspector()


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def registrar():
    return FakeRegistrar()


@pytest.fixture
def corrector():
    return ScriptedCorrector()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def locks():
    return WorkspaceLocks()


@pytest.fixture
def build_monitor(build_provider, clock):
    return BuildMonitor(build_provider, poll_interval=10, timeout=900, clock=clock, sleep=clock.sleep)


@pytest.fixture
def deploy_verifier(inspector, prober, clock):
    return DeploymentVerifier(
        inspector,
        prober,
        poll_interval=5,
        rollout_timeout=180,
        probe_timeout=10,
        probe_attempts=3,
        probe_backoff=5,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def domain_verifier(registrar, clock):
    return DomainVerifier(registrar, attempts=3, backoff=30, sleep=clock.sleep)


@pytest.fixture
def orchestrator(source_control, build_monitor, deploy_verifier, domain_verifier, corrector, store, listener, locks):
    return LifecycleOrchestrator(
        workspace="/srv/shop",
        gateway=RepositoryGateway(source_control),
        build_monitor=build_monitor,
        deploy_verifier=deploy_verifier,
        domain_verifier=domain_verifier,
        corrector=corrector,
        store=store,
        listener=listener,
        locks=locks,
    )
