import nmap
import pytest

from probegate.security.ssrf import SsrfPolicy
from probegate.security.validation import HostInputValidator

PUBLIC_ADDRESS = "93.184.216.34"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def public_resolver(host):
    return [PUBLIC_ADDRESS]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def validator():
    return HostInputValidator(SsrfPolicy(resolver=public_resolver))


@pytest.fixture
def nmap_offline(monkeypatch):
    """PortScanner() probes for the nmap binary; analysing saved XML does not need it."""
    monkeypatch.setattr(nmap.PortScanner, "__init__", lambda self, *args, **kwargs: None)
