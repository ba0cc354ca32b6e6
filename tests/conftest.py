"""Shared pytest fixtures for vmi-harness tests.

No hypervisor is needed: FakeBackend records every reset/destroy in one
ordered log and ChannelRecorder hands out in-memory event channels.
"""

import pytest

from tests.fakes import ChannelRecorder, FakeBackend
from vmi_harness import constants
from vmi_harness.config import HarnessConfig
from vmi_harness.models import VmIdentity
from vmi_harness.registry import TestRegistry
from vmi_harness.runner import HarnessRunner


@pytest.fixture
def identity() -> VmIdentity:
    return VmIdentity(name="winxp", vcpu_count=1)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def channels() -> ChannelRecorder:
    return ChannelRecorder()


@pytest.fixture
def config() -> HarnessConfig:
    """Short bounds so timeout paths finish quickly."""
    return HarnessConfig(
        vm_name="winxp",
        test_timeout_seconds=2.0,
        event_timeout_ms=100,
        teardown_timeout_seconds=1.0,
    )


@pytest.fixture
def registry() -> TestRegistry:
    return TestRegistry()


@pytest.fixture
def runner(
    config: HarnessConfig,
    backend: FakeBackend,
    channels: ChannelRecorder,
    registry: TestRegistry,
) -> HarnessRunner:
    return HarnessRunner(config, backend=backend, channel_factory=channels, registry=registry)


@pytest.fixture
def no_retry_wait(monkeypatch: pytest.MonkeyPatch) -> None:
    """Zero backoff between setup attempts."""
    monkeypatch.setattr(constants, "SETUP_RETRY_MIN_SECONDS", 0.0)
    monkeypatch.setattr(constants, "SETUP_RETRY_MAX_SECONDS", 0.0)
