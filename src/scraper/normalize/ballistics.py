"""Best-effort ballistic attribute extraction from product text.

Each extractor runs an ordered regex cascade over title and description text.
Numeric values outside the accepted range are treated as absent, never clamped.
Caliber text resolves to one canonical label per caliber family, while
technically distinct chamberings (.223 Remington / 5.56 NATO, .308 Winchester /
7.62 NATO) stay separate.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# Accepted numeric ranges (inclusive)
GRAIN_WEIGHT_MIN = 15
GRAIN_WEIGHT_MAX = 800
ROUND_COUNT_MIN = 5
ROUND_COUNT_MAX = 10000

# Token must not be glued to a preceding word character or decimal point
_START = r"(?<![\w.])"


def _rx(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


# Order matters: more specific chamberings precede their look-alikes
CALIBER_PATTERNS: list[tuple[str, re.Pattern]] = [
    # Handgun
    ("9mm Makarov", _rx(_START + r"9\s?(?:mm\s*makarov|x\s?18(?:\s?mm)?)\b")),
    ("9mm", _rx(_START + r"9\s?(?:mm|x\s?19(?:\s?mm)?)(?:\s*(?:luger|parabellum|nato))?\b")),
    ("9mm", _rx(_START + r"9\s+(?:luger|para(?:bellum)?)\b")),
    ("10mm Auto", _rx(_START + r"10\s?mm(?:\s*auto)?\b")),
    (".380 ACP", _rx(_START + r"\.380\b|" + _START + r"380\s*(?:acp|auto)\b")),
    (".38 Special", _rx(_START + r"\.?38\s*(?:special|spl|spcl)\b")),
    (".357 SIG", _rx(_START + r"\.?357\s*sig\b")),
    (".357 Magnum", _rx(_START + r"\.?357\s*(?:magnum|mag)\b")),
    (".40 S&W", _rx(_START + r"\.?40\s*(?:s\s?&\s?w|sw|smith\s*(?:&|and)\s*wesson)\b")),
    (".45 ACP", _rx(_START + r"\.?45\s*(?:acp|auto)\b")),
    (".45 Colt", _rx(_START + r"\.?45\s*(?:long\s*)?colt\b|" + _START + r"\.?45\s*lc\b")),
    (".25 ACP", _rx(_START + r"\.?25\s*(?:acp|auto)\b")),
    (".32 ACP", _rx(_START + r"\.?32\s*(?:acp|auto)\b")),
    # Rimfire
    (".22 WMR", _rx(_START + r"\.?22\s*(?:wmr|win(?:chester)?\s*mag(?:num)?|magnum|mag)\b")),
    (".22 LR", _rx(_START + r"\.?22\s*(?:lr|long\s*rifle)\b")),
    (".17 HMR", _rx(_START + r"\.?17\s*hmr\b")),
    # Rifle
    ("5.56 NATO", _rx(_START + r"5\.56(?:\s?mm)?(?:\s?x\s?45(?:\s?mm)?)?(?:\s*nato)?(?![\d.])")),
    (".223 Remington", _rx(_START + r"\.223\b|" + _START + r"223\s*rem(?:ington)?\b")),
    ("7.62x39mm", _rx(_START + r"7\.62\s?x\s?39(?:\s?mm)?")),
    ("7.62x54R", _rx(_START + r"7\.62\s?x\s?54\s?r?")),
    ("7.62 NATO", _rx(_START + r"7\.62\s?x\s?51(?:\s?mm)?|" + _START + r"7\.62\s*nato\b")),
    (".308 Winchester", _rx(_START + r"\.308\b|" + _START + r"308\s*win(?:chester)?\b")),
    (".30-06 Springfield", _rx(_START + r"\.?30-06\b")),
    (".30-30 Winchester", _rx(_START + r"\.?30-30\b")),
    (".300 Winchester Magnum", _rx(_START + r"\.?300\s*win(?:chester)?\s*mag(?:num)?\b")),
    (".300 AAC Blackout", _rx(_START + r"\.?300\s*(?:aac\s*)?(?:blackout|blk)\b|" + _START + r"\.?300\s*aac\b")),
    ("6.5 Creedmoor", _rx(_START + r"6\.5\s?(?:mm)?\s*(?:creedmoor|cm)\b")),
    (".243 Winchester", _rx(_START + r"\.?243\s*win(?:chester)?\b|" + _START + r"\.243\b")),
    (".270 Winchester", _rx(_START + r"\.?270\s*win(?:chester)?\b|" + _START + r"\.270\b")),
    # Shotgun
    ("12 Gauge", _rx(_START + r"12\s*-?\s*(?:gauge|ga)\b")),
    ("20 Gauge", _rx(_START + r"20\s*-?\s*(?:gauge|ga)\b")),
    ("16 Gauge", _rx(_START + r"16\s*-?\s*(?:gauge|ga)\b")),
    ("28 Gauge", _rx(_START + r"28\s*-?\s*(?:gauge|ga)\b")),
    (".410 Bore", _rx(_START + r"\.410\b|" + _START + r"410\s*(?:bore|ga|gauge)\b")),
]

GRAIN_PATTERN = _rx(_START + r"(\d{1,4}(?:\.\d+)?)\s*-?\s*(?:gr|grs|grain|grains|grn)\b")

ROUND_COUNT_PATTERNS: list[re.Pattern] = [
    _rx(r"\b(?:box|case|bag|pack|can|tin|carton)\s+of\s+(\d{1,3}(?:,\d{3})+|\d+)\b"),
    _rx(_START + r"(\d{1,3}(?:,\d{3})+|\d+)\s*-?\s*(?:rounds?|rds?|ct|count|shells|cartridges)\b"),
    _rx(_START + r"(\d{1,3}(?:,\d{3})+|\d+)\s*/\s*(?:box|bx|case)\b"),
]

# Checked in order; the first hit wins
BULLET_TYPE_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("HST", _rx(r"\bHST\b")),
    ("GDHP", _rx(r"\bgold\s*dot\b|\bGDHP\b")),
    ("XTP", _rx(r"\bXTP\b")),
    ("VMAX", _rx(r"\bV-?MAX\b")),
    ("BJHP", _rx(r"\bBJHP\b")),
    ("JHP", _rx(r"\bJHP\b|\bjacketed\s+hollow\s*point\b")),
    ("HP", _rx(r"\bhollow\s*point\b")),
    ("HP", _rx(r"\bHP\b")),
    ("TMJ", _rx(r"\bTMJ\b|\btotal\s+metal\s+jacket\b")),
    ("CMJ", _rx(r"\bCMJ\b")),
    ("FMJ", _rx(r"\bFMJ\b")),
    ("FMJ", _rx(r"\bfull\s+metal\s+jacket\b")),
    ("JSP", _rx(r"\bJSP\b|\bjacketed\s+soft\s*point\b")),
    ("PSP", _rx(r"\bPSP\b|\bpointed\s+soft\s*point\b")),
    ("SP", _rx(r"\bSP\b")),
    ("SP", _rx(r"\bsoft\s*point\b")),
    ("FRANGIBLE", _rx(r"\bfrangible\b")),
    ("SWC", _rx(r"\bSWC\b|\bsemi-?\s?wadcutter\b")),
    ("WADCUTTER", _rx(r"\bwadcutter\b|\bWC\b")),
    ("BUCKSHOT", _rx(r"\bbuckshot\b")),
    ("BUCKSHOT", _rx(r"\b0{1,3}\s*buck\b")),
    ("BIRDSHOT", _rx(r"\bbirdshot\b|\bbird\s+shot\b")),
    ("SLUG", _rx(r"\bslugs?\b")),
]

CASE_MATERIAL_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("Nickel", _rx(r"\bnickel(?:[-\s]plated)?\b")),
    ("Aluminum", _rx(r"\balumin(?:um|ium)\b")),
    ("Steel", _rx(r"\bsteel\b")),
    ("Brass", _rx(r"\bbrass\b")),
]


@dataclass
class BallisticFields:
    """Structured fields parsed from free text."""

    caliber: Optional[str] = None
    grain_weight: Optional[int] = None
    round_count: Optional[int] = None
    bullet_type: Optional[str] = None
    case_material: Optional[str] = None


def _join_text(*parts: Optional[str]) -> str:
    return " ".join(p for p in parts if p)


def canonicalize_caliber(text: Optional[str]) -> Optional[str]:
    """
    Resolve caliber text to its canonical label.

    Args:
        text: Free text containing a caliber designation

    Returns:
        Canonical caliber label, or None if no known caliber is present
    """
    if not text:
        return None
    for label, pattern in CALIBER_PATTERNS:
        if pattern.search(text):
            return label
    return None


def _to_int(token: str) -> Optional[int]:
    try:
        return int(round(float(token.replace(",", ""))))
    except ValueError:
        return None


def in_grain_range(value: Optional[float]) -> bool:
    return value is not None and GRAIN_WEIGHT_MIN <= value <= GRAIN_WEIGHT_MAX


def in_round_count_range(value: Optional[float]) -> bool:
    return value is not None and ROUND_COUNT_MIN <= value <= ROUND_COUNT_MAX


def extract_grain_weight(text: Optional[str]) -> Optional[int]:
    """First grain weight token in range, else None."""
    if not text:
        return None
    for match in GRAIN_PATTERN.finditer(text):
        value = _to_int(match.group(1))
        if in_grain_range(value):
            return value
        logger.debug(f"Rejected grain weight token {match.group(0)!r} (out of range)")
    return None


def extract_round_count(text: Optional[str]) -> Optional[int]:
    """First round count token in range, else None."""
    if not text:
        return None
    for pattern in ROUND_COUNT_PATTERNS:
        for match in pattern.finditer(text):
            value = _to_int(match.group(1))
            if in_round_count_range(value):
                return value
            logger.debug(f"Rejected round count token {match.group(0)!r} (out of range)")
    return None


def extract_bullet_type(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    for label, pattern in BULLET_TYPE_PATTERNS:
        if pattern.search(text):
            return label
    return None


def extract_case_material(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    for label, pattern in CASE_MATERIAL_PATTERNS:
        if pattern.search(text):
            return label
    return None


def extract_ballistic_fields(title: Optional[str], description: Optional[str] = None) -> BallisticFields:
    """
    Run every extractor over title and description text.

    Args:
        title: Product title
        description: Optional product description

    Returns:
        BallisticFields with any values found
    """
    text = _join_text(title, description)
    return BallisticFields(
        caliber=canonicalize_caliber(text),
        grain_weight=extract_grain_weight(text),
        round_count=extract_round_count(text),
        bullet_type=extract_bullet_type(text),
        case_material=extract_case_material(text),
    )
