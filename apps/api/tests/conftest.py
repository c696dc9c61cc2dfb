import pytest
from support import FakeClock, FakeStore, RegistryScript, SleepRecorder, make_settings

from enrollment.core.components import Components, build_components
from enrollment.core.settings import Settings
from enrollment.registry import client as registry_client


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def registry_http(monkeypatch) -> RegistryScript:
    script = RegistryScript()
    monkeypatch.setattr(registry_client.httpx, "AsyncClient", script.client_class())
    return script


@pytest.fixture
def components(settings: Settings, store: FakeStore, sleeps: SleepRecorder, clock: FakeClock) -> Components:
    return build_components(settings, store, sleep=sleeps, clock=clock)  # type: ignore[arg-type]
