import os
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from engine.db import make_session_factory
from engine.job_manager import JobManager
from engine.models import (
    Client,
    InteractServer,
    JobStatus,
    Provider,
    ProviderCredential,
    ScanJob,
    ScanProfile,
    TargetSet,
)
from engine.service import Engine
from engine.store import JobStore
from utils import crypto

MASTER_KEY = "0123456789abcdef0123456789abcdef"
VAULT_BLOCK = "$ANSIBLE_VAULT;1.1;AES256\n6162636465\n3031323334"


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeExecutor:
    """Stands in for ansible-playbook; generate.yml writes the per-scan playbooks."""

    def __init__(self):
        self.calls = []
        self.syntax_failures = {}
        self.run_failures = {}

    def syntax_check(self, playbook):
        name = os.path.basename(playbook)
        if name in self.syntax_failures:
            return False, self.syntax_failures[name]
        return True, ""

    def run_playbook(self, job_id, playbook, extra_vars_file, inventory, log_dir, vault_secret, timeout=None):
        name = os.path.basename(playbook)
        self.calls.append((name, job_id, vault_secret))
        if name in self.run_failures:
            raise self.run_failures[name]
        if name == "generate.yml":
            scan_dir = os.path.dirname(extra_vars_file)
            for playbook_name in ("deploy.yml", "destroy.yml"):
                with open(os.path.join(scan_dir, playbook_name), "w") as f:
                    f.write("- hosts: all\n")

    def ran(self, name):
        return [call for call in self.calls if call[0] == name]


class FakeVault:
    def __init__(self):
        self.encrypted = []

    def encrypt_string(self, name, value, password):
        self.encrypted.append((name, value, password))
        return VAULT_BLOCK


class FakePricingClient:
    def __init__(self, price="0.10"):
        self.price = Decimal(price)
        self.lookups = []

    def hourly_price(self, api_key, region, size):
        self.lookups.append((api_key, region, size))
        return self.price


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event, job_id, **details):
        self.events.append((event, job_id))


def seed(session_factory):
    """Insert one client, a DO compute provider, an S3 scan bucket, a profile and a Created job."""
    db = session_factory()
    db.add(Client(id="client-1", name="Acme", hidden_name="acme-hidden"))
    db.add(InteractServer(id="interact-1", url="https://oast.example", token="itoken"))
    db.add(Provider(id="do-1", name="DO", provider_type="digitalocean", uses=["compute"],
                    settings={"region": "ams3", "do_project": "proj", "tags": ["bitor", "scan"]}))
    db.add(Provider(id="s3-1", name="Spaces", provider_type="s3", uses=["scan_storage"],
                    settings={"region": "ams3", "endpoint": "ams3.digitaloceanspaces.com",
                              "bucket": "scans", "use_path_style": True, "scans_path": "results/"}))
    db.add(ProviderCredential(provider_id="do-1", key_type="api_key", key=crypto.encrypt("do-token", MASTER_KEY)))
    db.add(ProviderCredential(provider_id="s3-1", key_type="access_key", key=crypto.encrypt("AKIA", MASTER_KEY)))
    db.add(ProviderCredential(provider_id="s3-1", key_type="secret_key", key=crypto.encrypt("s3cr3t", MASTER_KEY)))
    db.add(ScanProfile(id="profile-1", name="default", vm_size="s-1vcpu-1gb", vm_provider_id="do-1",
                       scan_bucket_id="s3-1", nuclei_profile={"severity": ["high", "critical"]}))
    db.add(TargetSet(id="targets-1", name="web", targets=["https://example.com"]))
    db.add(ScanJob(id="job-1", name="weekly", status=JobStatus.CREATED, client_id="client-1",
                   target_set_id="targets-1", scan_profile_id="profile-1", interact_id="interact-1"))
    db.commit()
    db.close()


@pytest.fixture
def session_factory():
    factory = make_session_factory("sqlite://")
    seed(factory)
    return factory


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def pricing_client():
    return FakePricingClient()


@pytest.fixture
def engine(session_factory, tmp_path, executor, notifier, pricing_client, clock):
    return Engine(
        session_factory=session_factory,
        base_path=str(tmp_path),
        master_key=MASTER_KEY,
        executor=executor,
        vault=FakeVault(),
        pricing_clients={"digitalocean": pricing_client},
        notifier=notifier,
        job_manager=JobManager(scheduler=lambda delay, fn: None),
        timeout=60,
        clock=clock,
    )
