"""Tests for ballistic attribute extraction."""

import pytest

from src.scraper.normalize.ballistics import (
    canonicalize_caliber,
    extract_ballistic_fields,
    extract_bullet_type,
    extract_case_material,
    extract_grain_weight,
    extract_round_count,
)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("Federal American Eagle 9mm Luger 115gr FMJ", "9mm"),
        ("Sellier & Bellot 9x19 124 Grain", "9mm"),
        ("Wolf 9x18 Makarov 94gr", "9mm Makarov"),
        ("Winchester .223 Rem 55 Grain", ".223 Remington"),
        ("PMC X-TAC 5.56x45mm NATO 55gr", "5.56 NATO"),
        ("Hornady .308 Win 168gr BTHP", ".308 Winchester"),
        ("IMI 7.62x51mm 150gr", "7.62 NATO"),
        ("Tula 7.62x39 122gr Steel", "7.62x39mm"),
        ("Remington 45 ACP 230gr", ".45 ACP"),
        ("Speer Gold Dot 40 S&W 165gr", ".40 S&W"),
        ("CCI Mini-Mag 22 LR 40gr", ".22 LR"),
        ("Hornady 22 WMR 30gr V-MAX", ".22 WMR"),
        ("Winchester 12 Gauge 00 Buck", "12 Gauge"),
        ("Hornady 6.5 Creedmoor 140gr ELD", "6.5 Creedmoor"),
        ("Federal 300 Blackout 150gr", ".300 AAC Blackout"),
        ("Generic rifle ammunition", None),
        (None, None),
    ],
)
def test_canonicalize_caliber(text, expected):
    assert canonicalize_caliber(text) == expected


def test_distinct_chamberings_stay_separate():
    """.223 Remington and 5.56 NATO are not merged, nor .308 Win and 7.62 NATO."""
    assert canonicalize_caliber(".223 Remington") != canonicalize_caliber("5.56 NATO")
    assert canonicalize_caliber(".308 Winchester") != canonicalize_caliber("7.62x51mm NATO")


def test_extract_grain_weight():
    assert extract_grain_weight("Federal HST 9mm 124 Grain JHP") == 124
    assert extract_grain_weight("PMC 55gr FMJ") == 55
    assert extract_grain_weight("55-grain FMJ") == 55
    assert extract_grain_weight("no weight here") is None


def test_grain_weight_out_of_range_is_absent():
    """Values outside 15-800 are treated as absent, not clamped."""
    assert extract_grain_weight("10 gr birdshot") is None
    assert extract_grain_weight("1000 grain monster") is None
    assert extract_grain_weight("1000 grain monster 150gr") == 150


def test_extract_round_count():
    assert extract_round_count("Box of 50") == 50
    assert extract_round_count("Case of 1,000") == 1000
    assert extract_round_count("500 Rounds") == 500
    assert extract_round_count("20rd box") == 20
    assert extract_round_count("50/box") == 50
    assert extract_round_count("1 Round") is None
    assert extract_round_count(None) is None


def test_extract_bullet_type_order():
    assert extract_bullet_type("Federal HST JHP") == "HST"
    assert extract_bullet_type("Speer Gold Dot Hollow Point") == "GDHP"
    assert extract_bullet_type("Full Metal Jacket") == "FMJ"
    assert extract_bullet_type("Jacketed Hollow Point") == "JHP"
    assert extract_bullet_type("12ga 00 Buck") == "BUCKSHOT"
    assert extract_bullet_type("Rifled Slug") == "SLUG"
    assert extract_bullet_type("plain text") is None


def test_extract_case_material():
    assert extract_case_material("Nickel plated brass case") == "Nickel"
    assert extract_case_material("Steel case, berdan primed") == "Steel"
    assert extract_case_material("Brass cased") == "Brass"
    assert extract_case_material(None) is None


def test_extract_ballistic_fields_from_title_and_description():
    fields = extract_ballistic_fields(
        "Federal American Eagle 9mm Luger 115 Grain FMJ - 50 Rounds",
        "Brass cased, boxer primed, reloadable.",
    )

    assert fields.caliber == "9mm"
    assert fields.grain_weight == 115
    assert fields.round_count == 50
    assert fields.bullet_type == "FMJ"
    assert fields.case_material == "Brass"


def test_extract_ballistic_fields_empty():
    fields = extract_ballistic_fields(None, None)

    assert fields.caliber is None
    assert fields.grain_weight is None
    assert fields.round_count is None
