import pytest

from fake_rtx import FakeRTXDevice, FakeSSHClient
from rtx_ssh_session.config import ClientConfig
from rtx_ssh_session.session import InteractiveSession


@pytest.fixture(autouse=True)
def no_exit_delays(monkeypatch):
    """The exit sequence pauses for the device; the fake does not need it."""
    monkeypatch.setattr(InteractiveSession, 'EXIT_SETTLE_DELAY', 0)
    monkeypatch.setattr(InteractiveSession, 'CLOSE_SETTLE_DELAY', 0)


@pytest.fixture
def device():
    return FakeRTXDevice()


@pytest.fixture
def open_session(device):
    """Factory opening started sessions on the fake device; all are closed afterwards."""
    sessions = []

    def _open(deadline=None, **kwargs):
        session = InteractiveSession.open(FakeSSHClient(device), deadline=deadline, **kwargs)
        sessions.append(session)
        return session

    yield _open
    for session in sessions:
        session.close()


@pytest.fixture
def session(open_session):
    return open_session()


@pytest.fixture
def config():
    return ClientConfig(
        host='192.0.2.1',
        username='admin',
        password='login-secret',
        admin_password='admin123',
        skip_host_key_check=True,
    )
