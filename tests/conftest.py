import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from deploy_state import FileStateStore  # noqa: E402
from tests.fakes import FakeDevOpsApi  # noqa: E402


@pytest.fixture
def api():
    """Fresh in-memory OCI api."""
    return FakeDevOpsApi()


@pytest.fixture
def compartment(api):
    return api.add_compartment('dev')


@pytest.fixture
def store(tmp_path):
    return FileStateStore(str(tmp_path / 'deploy_state.json'))


@pytest.fixture
def no_sleep():
    """Sleep replacement recording requested delays."""
    delays = []
    return delays.append, delays
