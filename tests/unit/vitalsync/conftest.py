from __future__ import annotations

import pytest
from fakes import FakeDashboardAPI, ManualClock


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def api(clock: ManualClock) -> FakeDashboardAPI:
    return FakeDashboardAPI(clock)
