"""Shared pytest fixtures for contactly tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from helpers import FakeClock, ManualScheduler, RecordingListener  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep host configuration out of tests."""
    for name in (
        "DATABASE_URL",
        "GROQ_API_KEY",
        "QUEUE_BACKEND",
        "WHATSAPP_ALLOWED_SENDER",
        "EVOLUTION_WEBHOOK_SECRET",
        "INTERNAL_TASK_SECRET",
        "APP_ROLE",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def listener():
    return RecordingListener()
