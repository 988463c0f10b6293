from __future__ import annotations

from datetime import datetime

import pytest
from pydantic import ValidationError

from app.core.settings import Settings
from app.workers.queue import reaper_schedule


@pytest.mark.parametrize("interval_s", [60, 300, 900, 1800, 3600, 7200, 86400])
def test_accepted_reaper_intervals(interval_s: int) -> None:
    assert Settings(reaper_interval_s=interval_s).reaper_interval_s == interval_s


@pytest.mark.parametrize("interval_s", [30, 90, 420, 5400, 18000, 172800])
def test_rejected_reaper_intervals(interval_s: int) -> None:
    with pytest.raises(ValidationError):
        Settings(reaper_interval_s=interval_s)


def test_minute_schedule_fires_on_its_step() -> None:
    every_five = reaper_schedule(300)

    assert every_five(datetime(2024, 5, 1, 12, 0))
    assert every_five(datetime(2024, 5, 1, 12, 35))
    assert not every_five(datetime(2024, 5, 1, 12, 37))


def test_hourly_schedule_fires_on_the_hour() -> None:
    every_two_hours = reaper_schedule(7200)

    assert every_two_hours(datetime(2024, 5, 1, 14, 0))
    assert not every_two_hours(datetime(2024, 5, 1, 15, 0))
    assert not every_two_hours(datetime(2024, 5, 1, 14, 30))
