"""
Pytest configuration and fixtures for the follow-up engine.
"""
import pytest

from followup_engine.utils.business_hours import BusinessHoursScheduler, StaticCalendar
from tests.fakes import make_settings


@pytest.fixture
def settings():
    """Default settings, isolated from any local .env file."""
    return make_settings()


@pytest.fixture
def scheduler(settings) -> BusinessHoursScheduler:
    """Scheduler using the configured prayer times and no holidays."""
    return BusinessHoursScheduler(calendar=StaticCalendar.from_settings(settings), settings=settings)
