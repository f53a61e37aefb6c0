import math

import pytest

import invoice_core as core
from invoice_core import FilamentUsage, JobParameters, compute_breakdown


def _zero_params(**overrides) -> JobParameters:
    params = JobParameters()
    for name in core.NUMERIC_FIELDS:
        if name not in core.INT_FIELDS:
            setattr(params, name, 0.0)
    for k, v in overrides.items():
        setattr(params, k, v)
    return params


def _labor_only(subtotal: float, **overrides) -> JobParameters:
    # 60 $/h * minutes/60 == minutes
    return _zero_params(labor_rate=60.0, prep_time=subtotal, **overrides)


def test_documented_example_price_chain():
    params = _labor_only(10.0, parts_per_plate=4, num_plates=2, failure_rate=5.0, markup_percent=50.0)

    bd = compute_breakdown(params, [], 0.0)

    assert bd.subtotal == pytest.approx(10.0)
    assert bd.failure_adjustment == pytest.approx(0.526, abs=1e-3)
    assert bd.cost_per_part == pytest.approx(2.632, abs=1e-3)
    assert bd.markup_amount == pytest.approx(1.316, abs=1e-3)
    assert bd.final_price == pytest.approx(3.947, abs=1e-3)
    assert bd.total_job_cost == pytest.approx(31.58, abs=1e-2)
    assert bd.total_parts == 8


def test_all_categories_with_defaults():
    params = JobParameters()
    filaments = [FilamentUsage(0, "PLA", "#fff", 100.0, 20.0)]

    bd = compute_breakdown(params, filaments, 2.0)

    material = 2.0
    labor = (15.0 + 10.0 + 5.0 * 1 + 0.0) / 60.0 * 20.0
    machine = 2.0 * (300.0 / 15000.0 + 0.10 + 130.0 / 1000.0 * 0.15)
    tooling = 2.0 * (30.0 / 5000.0) + (2.0 / 25.0) * 0.1
    subtotal = material + labor + machine + tooling

    assert bd.material_cost == pytest.approx(material)
    assert bd.labor_cost == pytest.approx(labor)
    assert bd.machine_cost == pytest.approx(machine)
    assert bd.tooling_cost == pytest.approx(tooling)
    assert bd.postprocess_cost == 0.0
    assert bd.subtotal == pytest.approx(subtotal)
    assert bd.failure_adjustment == pytest.approx(subtotal / 0.95 - subtotal)
    assert bd.final_price == pytest.approx((subtotal / 0.95) * 1.5)
    assert bd.total_job_cost == pytest.approx(bd.final_price)
    assert bd.print_time_hours == 2.0


def test_post_processing_cost():
    params = _zero_params(tank_power=500.0, electricity_cost=0.2, solving_time=3.0, finishing_materials=1.5)

    bd = compute_breakdown(params, [], 0.0)

    assert bd.postprocess_cost == pytest.approx(0.5 * 0.2 * 3.0 + 1.5)


def test_labor_scales_finishing_with_parts_per_plate():
    params = _zero_params(labor_rate=30.0, finishing_per_part=10.0, finishing_per_plate=20.0, parts_per_plate=3)

    bd = compute_breakdown(params, [], 0.0)

    assert bd.labor_cost == pytest.approx((10.0 * 3 + 20.0) / 60.0 * 30.0)


def test_tooling_uses_total_filament_mass():
    params = _zero_params(nozzle_cost=10.0, nozzle_lifespan_kg=5.0)
    filaments = [FilamentUsage(0, "a", "", 300.0, 0.0), FilamentUsage(1, "b", "", 200.0, 0.0)]

    bd = compute_breakdown(params, filaments, 10.0)

    assert bd.tooling_cost == pytest.approx(2.0 * 0.5)


@pytest.mark.parametrize("rate", [0.0, 1.0, 5.0, 25.0, 50.0, 99.0])
def test_failure_adjustment_amortizes_scrap(rate):
    bd = compute_breakdown(_labor_only(10.0, failure_rate=rate), [], 0.0)
    fraction = rate / 100.0

    assert bd.failure_adjustment == pytest.approx(10.0 * fraction / (1.0 - fraction))
    assert bd.failure_adjustment >= 0


@pytest.mark.parametrize("rate", [100.0, 150.0])
def test_failure_rate_at_or_above_hundred_gives_no_adjustment(rate):
    bd = compute_breakdown(_labor_only(10.0, failure_rate=rate), [], 0.0)

    assert bd.failure_adjustment == 0.0
    assert bd.cost_per_part == pytest.approx(10.0)
    assert math.isfinite(bd.total_job_cost)


def test_zero_parts_per_plate_does_not_divide():
    bd = compute_breakdown(_labor_only(10.0, parts_per_plate=0, failure_rate=0.0), [], 0.0)

    assert bd.cost_per_part == pytest.approx(10.0)
    assert bd.total_parts == 0
    assert bd.total_job_cost == 0.0


def test_negative_inputs_are_clamped():
    params = _labor_only(10.0, failure_rate=-20.0, markup_percent=-50.0, finishing_per_part=-5.0)

    bd = compute_breakdown(params, [], -3.0)

    assert bd.failure_adjustment == 0.0
    assert bd.markup_amount == 0.0
    assert bd.labor_cost == pytest.approx(10.0)
    assert bd.print_time_hours == 0.0


def test_zero_lifespans_do_not_divide():
    params = _zero_params(printer_cost=300.0, printer_lifespan=0.0, bed_cost=30.0, bed_lifespan=0.0,
                          nozzle_cost=2.0, nozzle_lifespan_kg=0.0)

    bd = compute_breakdown(params, [FilamentUsage(0, "a", "", 500.0, 0.0)], 5.0)

    assert bd.machine_cost == 0.0
    assert bd.tooling_cost == 0.0


def test_non_finite_print_time_treated_as_zero():
    bd = compute_breakdown(JobParameters(), [], float("nan"))

    assert bd.print_time_hours == 0.0
    assert bd.machine_cost == 0.0


def test_recalculation_is_idempotent_and_pure():
    params = JobParameters(parts_per_plate=3, num_plates=4)
    filaments = [FilamentUsage(0, "PLA", "#fff", 80.0, 25.0)]
    before = (params.to_dict(), [f.to_dict() for f in filaments])

    first = compute_breakdown(params, filaments, 3.25)
    second = compute_breakdown(params, filaments, 3.25)

    assert first == second
    assert (params.to_dict(), [f.to_dict() for f in filaments]) == before


def test_cost_edit_flows_into_breakdown():
    params = JobParameters()
    fil = FilamentUsage(0, "PLA", "#fff", 500.0, 20.0)
    base = compute_breakdown(params, [fil], 1.0)

    fil.cost_per_kg = 40.0
    edited = compute_breakdown(params, [fil], 1.0)

    assert edited.material_cost - base.material_cost == pytest.approx(10.0)
