# --- test import path bootstrap (src/ layout) ---
import sys as _sys
from pathlib import Path as _Path

_SRC = _Path(__file__).resolve().parents[1] / "src"
if _SRC.is_dir():
    _p = str(_SRC)
    if _p not in _sys.path:
        _sys.path.insert(0, _p)
# --- end bootstrap ---

import pytest

from fakes import FakeDeployer, InMemoryClient

from clusterclassifier.controllers.reconciler import ClassifierReconciler
from clusterclassifier.controllers.report_collection import PullReports, PushReports

ENDPOINT = "https://mgmt.example.com:6443"


@pytest.fixture
def client() -> InMemoryClient:
    return InMemoryClient()


@pytest.fixture
def fake_deployer() -> FakeDeployer:
    return FakeDeployer()


@pytest.fixture
def reconciler(client: InMemoryClient, fake_deployer: FakeDeployer) -> ClassifierReconciler:
    return ClassifierReconciler(client, fake_deployer, PullReports())


@pytest.fixture
def push_reconciler(client: InMemoryClient, fake_deployer: FakeDeployer) -> ClassifierReconciler:
    return ClassifierReconciler(client, fake_deployer, PushReports(ENDPOINT))
