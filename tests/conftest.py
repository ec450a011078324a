import logging
from pathlib import Path

import pytest

from quillguard.policy import Policy, load_policy
from quillguard.security_log import LOGGER_NAME

EXAMPLE_POLICY = Path(__file__).resolve().parent.parent / "examples" / "policy.yaml"


class FakeTime:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start

    def advance(self, seconds: float) -> None:
        self._now += seconds

    def time(self) -> float:
        return self._now


@pytest.fixture
def clock() -> FakeTime:
    return FakeTime()


@pytest.fixture
def policy() -> Policy:
    return load_policy(EXAMPLE_POLICY)


@pytest.fixture
def security_records(caplog: pytest.LogCaptureFixture):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)

    def records(event_type=None):
        found = [r.security_event for r in caplog.records if hasattr(r, "security_event")]
        if event_type is not None:
            found = [event for event in found if event.event_type == event_type]
        return found

    return records
