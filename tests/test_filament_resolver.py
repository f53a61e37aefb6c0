import math

import pytest

from invoice_core import (
    DEFAULT_COLOR,
    DEFAULT_COST_PER_KG,
    FilamentUsage,
    PresetProvider,
    apply_cost_overrides,
    resolve_filaments,
)


def _expected_weight(length_mm: float, diameter: float = 1.75, density: float = 1.24) -> float:
    return length_mm * math.pi * (diameter / 2.0) ** 2 * density / 1000.0


def test_single_extruder_defaults_match_geometric_estimate():
    out = resolve_filaments({0: 100.0}, PresetProvider(), total_weight_g=0.0)

    assert len(out) == 1
    fil = out[0]
    assert fil.extruder_id == 0
    assert fil.name == "Filament 1"
    assert fil.color == DEFAULT_COLOR
    assert fil.cost_per_kg == DEFAULT_COST_PER_KG
    assert fil.weight_g == pytest.approx(0.2983, abs=1e-4)
    assert fil.weight_g == pytest.approx(_expected_weight(100.0))
    assert fil.calculated_cost == pytest.approx(0.00596, abs=1e-5)


def test_single_extruder_uses_reported_total_weight():
    out = resolve_filaments({0: 100.0}, PresetProvider(), total_weight_g=12.5)

    assert out[0].weight_g == 12.5
    assert out[0].calculated_cost == pytest.approx(12.5 / 1000.0 * 20.0)


def test_total_weight_not_applied_to_multiple_extruders():
    out = resolve_filaments({0: 1000.0, 1: 500.0}, PresetProvider(), total_weight_g=99.0)

    assert [f.weight_g for f in out] == pytest.approx([_expected_weight(1000.0), _expected_weight(500.0)])


def test_no_extruder_data_synthesizes_default_entry():
    out = resolve_filaments({}, PresetProvider(), total_weight_g=42.0)

    assert len(out) == 1
    fil = out[0]
    assert fil.extruder_id == 0
    assert fil.name == "Default Filament"
    assert fil.color == DEFAULT_COLOR
    assert fil.weight_g == 42.0
    assert fil.cost_per_kg == 20.0
    assert fil.calculated_cost == pytest.approx(0.84)


def test_no_data_at_all_gives_empty_list():
    assert resolve_filaments({}, PresetProvider(), total_weight_g=0.0) == []


def test_presets_applied_in_extruder_order_with_fallbacks():
    presets = PresetProvider({
        "filament_presets": ["PLA", "PETG"],
        "filament_colour": ["#FF0000", ""],
        "filament_cost": [24.99, "30"],
        "filament_density": [1.26, "not-a-number"],
        "filament_diameter": [2.85],
    })

    out = resolve_filaments({"1": 1000.0, "0": 2000.0}, presets)

    assert [f.extruder_id for f in out] == [0, 1]
    pla, petg = out
    assert (pla.name, pla.color, pla.cost_per_kg) == ("PLA", "#FF0000", 24.99)
    assert (petg.name, petg.color, petg.cost_per_kg) == ("PETG", DEFAULT_COLOR, 30.0)
    assert pla.weight_g == pytest.approx(_expected_weight(2000.0, diameter=2.85, density=1.26))
    assert petg.weight_g == pytest.approx(_expected_weight(1000.0))


def test_semicolon_joined_preset_strings():
    presets = PresetProvider({"filament_cost": "18.5;22", "filament_colour": "#111111;#222222"})

    assert presets.get_float("filament_cost", 1) == 22.0
    assert presets.get_str("filament_colour", 0) == "#111111"
    assert presets.get_float("filament_cost", 2) is None
    assert presets.get_float("missing", 0) is None
    assert presets.get_float("filament_cost", -1) is None


def test_non_finite_preset_is_not_found():
    presets = PresetProvider({"filament_density": ["nan"], "filament_cost": [True]})

    assert presets.get_float("filament_density", 0) is None
    assert presets.get_float("filament_cost", 0) is None


def test_negative_usage_clamped_to_zero():
    out = resolve_filaments({0: -50.0, 1: 10.0}, PresetProvider())

    assert out[0].weight_g == 0.0
    assert out[0].calculated_cost == 0.0


def test_calculated_cost_follows_every_edit():
    fil = FilamentUsage(extruder_id=0, name="PLA", color="#fff", weight_g=250.0, cost_per_kg=20.0)
    assert fil.calculated_cost == pytest.approx(5.0)

    fil.cost_per_kg = 32.0
    assert fil.calculated_cost == pytest.approx(250.0 / 1000.0 * 32.0)

    fil.weight_g = 100.0
    assert fil.calculated_cost == pytest.approx(3.2)
    assert fil.to_dict()["calculated_cost"] == pytest.approx(3.2)


def test_apply_cost_overrides_only_touches_matching_extruders():
    out = resolve_filaments({0: 1000.0, 1: 1000.0}, PresetProvider())

    apply_cost_overrides(out, {1: 45.0, 7: 99.0})

    assert out[0].cost_per_kg == 20.0
    assert out[1].cost_per_kg == 45.0
    assert out[1].calculated_cost == pytest.approx(out[1].weight_g / 1000.0 * 45.0)
