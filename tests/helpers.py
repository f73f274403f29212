"""Helpers shared by test modules."""

from datetime import datetime
from pathlib import Path

FIXTURES_DIR = Path(__file__).parent / "fixtures"
FIXED_NOW = datetime(2026, 10, 1, 12, 0, 0)


def fixture_path(adapter_id: str, name: str) -> Path:
    """Path of a captured fixture document (.html or .json)."""
    for suffix in (".html", ".json"):
        path = FIXTURES_DIR / adapter_id / f"{name}{suffix}"
        if path.exists():
            return path
    raise FileNotFoundError(f"No fixture {name} for adapter {adapter_id}")


def load_fixture(adapter_id: str, name: str) -> str:
    return fixture_path(adapter_id, name).read_text(encoding="utf-8")


class FakeClock:
    """Manually advanced clock with a sleep that advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.now += seconds
