"""Bundled retailer adapters."""

from src.scraper.adapters.brownells import BrownellsAdapter
from src.scraper.adapters.midwayusa import MidwayUSAAdapter
from src.scraper.adapters.primaryarms import PrimaryArmsAdapter
from src.scraper.adapters.sgammo import SGAmmoAdapter

ALL_ADAPTERS = [
    SGAmmoAdapter,
    MidwayUSAAdapter,
    PrimaryArmsAdapter,
    BrownellsAdapter,
]

__all__ = [
    "ALL_ADAPTERS",
    "BrownellsAdapter",
    "MidwayUSAAdapter",
    "PrimaryArmsAdapter",
    "SGAmmoAdapter",
]
