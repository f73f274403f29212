"""Adapter fixture contract: capture metadata, freshness and deterministic offer hashes."""

import hashlib
import json
import logging
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ValidationError, field_validator

from src.config import settings

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"
REQUIRED_FIXTURES = ("in_stock", "out_of_stock", "malformed")
DEFAULT_EXCLUDED_HASH_FIELDS = ("observed_at", "created_at", "updated_at")


class FixtureError(ValueError):
    """Raised when fixture metadata is missing, invalid or too old."""

    pass


class FixtureMeta(BaseModel):
    """Capture metadata stored next to every fixture document."""

    captured_at: datetime
    captured_from: str
    captured_by: str
    notes: str

    @field_validator("captured_from", "captured_by", "notes")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("captured_at")
    @classmethod
    def as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class FixtureFreshness(BaseModel):
    status: str  # ok, warn or fail
    age_days: int
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "fail"


def validate_fixture_meta(raw: Any) -> FixtureMeta:
    """
    Validate a decoded metadata document.

    Raises:
        FixtureError: If a field is missing, blank or malformed
    """
    if not isinstance(raw, dict):
        raise FixtureError("Fixture metadata must be a JSON object")
    try:
        return FixtureMeta.model_validate(raw)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise FixtureError(f"Invalid fixture metadata ({fields}): {e}") from e


def load_fixture_meta(fixture_path: str | Path) -> FixtureMeta:
    """
    Load the metadata for a fixture document (`<name>.html` -> `<name>.meta.json`).

    Raises:
        FixtureError: If the metadata file is missing or invalid
    """
    path = Path(fixture_path)
    meta_path = path.with_name(path.stem + META_SUFFIX)
    if not meta_path.exists():
        raise FixtureError(f"Missing fixture metadata: {meta_path}")
    try:
        raw = json.loads(meta_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise FixtureError(f"Fixture metadata is not valid JSON: {meta_path}: {e}") from e
    return validate_fixture_meta(raw)


def check_freshness(
    meta: FixtureMeta,
    now: Optional[datetime] = None,
    strict: bool = False,
    warn_after_days: Optional[int] = None,
    fail_after_days: Optional[int] = None,
) -> FixtureFreshness:
    """
    Age check for a fixture.

    Past the warning age the fixture is flagged; past the failure age it
    fails, but only in strict mode.
    """
    warn_after = settings.fixture_warn_age_days if warn_after_days is None else warn_after_days
    fail_after = settings.fixture_fail_age_days if fail_after_days is None else fail_after_days
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    age_days = max(0, (now - meta.captured_at).days)

    if strict and age_days > fail_after:
        return FixtureFreshness(
            status="fail",
            age_days=age_days,
            message=f"Fixture is stale ({age_days} days old, strict threshold {fail_after} days)",
        )
    if age_days > warn_after:
        logger.warning(f"Fixture captured from {meta.captured_from} is {age_days} days old")
        return FixtureFreshness(
            status="warn",
            age_days=age_days,
            message=f"Fixture is stale ({age_days} days old, warning threshold {warn_after} days)",
        )
    return FixtureFreshness(status="ok", age_days=age_days)


def missing_fixtures(adapter_dir: str | Path) -> list[str]:
    """Required fixture names with no document in an adapter's fixture directory."""
    directory = Path(adapter_dir)
    present = set()
    if directory.exists():
        present = {p.stem for p in directory.iterdir() if not p.name.endswith(META_SUFFIX)}
    return [name for name in REQUIRED_FIXTURES if name not in present]


def _offer_sort_key(item: dict) -> str:
    return f"{item.get('url')}|{item.get('retailer_product_id') or ''}|{item.get('retailer_sku') or ''}"


def _is_offer_like(item: Any) -> bool:
    return isinstance(item, dict) and isinstance(item.get("url"), str)


def _stable(value: Any, excluded: frozenset[str]) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, float) and value != value:
        return None
    if isinstance(value, dict):
        return {key: _stable(value[key], excluded) for key in sorted(value) if key not in excluded}
    if isinstance(value, (list, tuple)):
        items = [_stable(item, excluded) for item in value]
        if items and all(_is_offer_like(item) for item in items):
            items.sort(key=_offer_sort_key)
        return items
    return value


def deterministic_hash(value: Any, exclude_fields: Optional[Iterable[str]] = None) -> str:
    """
    sha256 of a value with sorted keys and timestamp fields removed.

    Lists of offers are ordered by (url, retailer product id, retailer SKU)
    so extraction order does not change the hash.
    """
    excluded = frozenset(DEFAULT_EXCLUDED_HASH_FIELDS if exclude_fields is None else exclude_fields)
    payload = json.dumps(_stable(value, excluded), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
