"""Shared fixtures: catalog record builder and controllable clocks."""

from datetime import datetime, timedelta, timezone

import pytest


def component(
    id: str,
    category: str | None = "Sensors",
    manufacturer: str | None = "Bosch",
    price: float = 10.0,
    quantity: int = 5,
    voltage: str | dict | None = "3.3-5V",
    protocols: list[str] | None = None,
    package: str | None = "LGA-8",
    temperature: str | None = None,
    **extra,
) -> dict:
    """Raw catalog record in the nested specification layout."""
    return {
        "id": id,
        "name": extra.pop("name", f"Part {id}"),
        "category": category,
        "manufacturer": manufacturer,
        "price": price,
        "quantity": quantity,
        "description": extra.pop("description", ""),
        "specifications": {
            "electrical": {"voltage": voltage},
            "mechanical": {"package": package, **extra},
            "environmental": {"temperature": temperature},
            "communication": {"protocols": protocols if protocols is not None else ["I2C"]},
        },
    }


@pytest.fixture
def make_component():
    return component


class FakeClock:
    """Float clock (seconds) for caches and error logs."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    """Datetime clock for the preference learner."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def date_clock():
    return FakeDateClock()
