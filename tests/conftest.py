"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from deken.core.config.loader import DekenConfig
from deken.core.services.event_bus import EventBus
from deken.core.services.package_manager import PackageManager
from registry_fakes import INFO_URL, SEARCH_URL, FakeOpener


@pytest.fixture
def fake_http() -> FakeOpener:
    """Fake ``urlopen`` with no routes; tests add what they need."""
    return FakeOpener()


@pytest.fixture
def library_dir(tmp_path: Path) -> Path:
    """Return a temporary plugdata library directory."""
    path = tmp_path / "Library" / "Deken"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def config(library_dir: Path) -> DekenConfig:
    """Config pinned to Linux / amd64 / 32-bit floats, tiny chunks."""
    return DekenConfig(
        search_url=SEARCH_URL,
        info_url=INFO_URL,
        library_dir=library_dir,
        os_name="Linux",
        arch_aliases=["amd64", "x86_64"],
        float_size=32,
        chunk_size=4,
    )


@pytest.fixture
def events() -> list[dict]:
    """Every event published on the ``bus`` fixture."""
    return []


@pytest.fixture
def bus(events: list[dict]) -> EventBus:
    bus = EventBus()
    bus.subscribe(events.append)
    return bus


@pytest.fixture
def manager(config: DekenConfig, bus: EventBus, fake_http: FakeOpener):
    """A started manager (no initial refresh) wired to the fake opener."""
    mgr = PackageManager(config, bus=bus, opener=fake_http)
    mgr.start(refresh=False)
    yield mgr
    mgr.shutdown(timeout=2)
