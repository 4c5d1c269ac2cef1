# tests/test_tapering.py
from datetime import datetime

import numpy as np
import pytest

from sigengine.builders.factory import create_tapering_builder
from sigengine.builders.tapering import ASCENDING, DESCENDING, TaperingBuilder, total_duration_text
from sigengine.errors import ErrorCode, TaperingScheduleError
from sigengine.types import DoseInput, Duration, TaperingPhase, TimingInput

DAILY = TimingInput(1, 1, "d")
START = datetime(2024, 3, 1)


def _phase(n, mg, weeks, name=None, note=None):
    return TaperingPhase(name=name or f"Step {n}", sequence_number=n, dose=DoseInput(mg, "mg"), timing=DAILY,
                         duration=Duration(weeks, "weeks" if weeks != 1 else "week"), transition_note=note)


def _prednisone_schedule():
    return [_phase(1, 40, 2, "Initial"), _phase(2, 20, 2), _phase(3, 10, 2), _phase(4, 5, 1, "Final")]


def test_descending_schedule_totals_seven_weeks(prednisone):
    """40 -> 20 -> 10 -> 5 mg, two weeks each and one week last: 7 weeks, descending."""
    builder = TaperingBuilder(prednisone, start=START).set_sequential_phases(_prednisone_schedule())
    assert builder.direction == DESCENDING
    assert np.isclose(builder.total_days, 49.0)
    assert total_duration_text(builder.total_days) == "7 weeks"

    phases = builder.render()
    assert [p.id for p in phases] == ["phase-1", "phase-2", "phase-3", "phase-4"]
    assert phases[0].text == "Phase 1 (Initial): Take 40 mg by mouth once daily."
    assert "Complete tapering schedule: 4 phases over 7 weeks" in phases[0].additional_instructions
    assert "Do not stop abruptly - follow tapering schedule exactly" in phases[0].additional_instructions
    assert "Monitor for withdrawal symptoms during tapering" in phases[0].additional_instructions
    assert "Continue for 2 weeks" in phases[0].additional_instructions


def test_ascending_schedule(prednisone):
    builder = TaperingBuilder(prednisone).set_sequential_phases([_phase(1, 5, 1), _phase(2, 10, 1)])
    assert builder.direction == ASCENDING


def test_phases_are_linked_and_bounded(prednisone):
    phases = TaperingBuilder(prednisone, start=START).set_sequential_phases(_prednisone_schedule()).render()

    assert phases[0].relationships[0].target_id == "phase-2"
    assert phases[-1].relationships == ()
    assert phases[0].timing.bounds.start == "2024-03-01T00:00:00"
    assert phases[0].timing.bounds.end == "2024-03-15T00:00:00"
    assert phases[1].timing.bounds.start == phases[0].timing.bounds.end
    assert phases[-1].timing.bounds.end == "2024-04-19T00:00:00"
    assert phases[1].to_dict()["relationship"] == [{"type": "SEQUENTIAL", "targetId": "phase-3"}]


def test_phase_rendering_leaves_builder_state_alone(prednisone):
    """Each phase renders from its own snapshot; the base builder keeps no dose."""
    builder = TaperingBuilder(prednisone, start=START).set_sequential_phases(_prednisone_schedule())
    before = builder.core.snapshot()
    assert builder.render() == builder.render()
    assert builder.core.snapshot() == before
    assert before.doses == ()


def test_sequence_gap_is_fatal(prednisone):
    builder = TaperingBuilder(prednisone)
    with pytest.raises(TaperingScheduleError) as exc:
        builder.set_sequential_phases([_phase(1, 20, 1), _phase(3, 10, 1)])
    assert exc.value.code == ErrorCode.TAPER_SEQUENCE_GAP


def test_invalid_phase_dose_is_wrapped(prednisone):
    bad = TaperingPhase(name="Half", sequence_number=2, dose=DoseInput(0.5, "tablet"), timing=DAILY,
                        duration=Duration(1, "week"))
    with pytest.raises(TaperingScheduleError) as exc:
        TaperingBuilder(prednisone).set_sequential_phases([_phase(1, 20, 1), bad])
    assert exc.value.code == ErrorCode.TAPER_PHASE_INVALID
    assert exc.value.details["phase"] == 2


def test_current_phase_mode(prednisone):
    builder = TaperingBuilder(prednisone, start=START).set_sequential_phases(_prednisone_schedule())
    [current] = builder.set_current_phase(2).render()

    assert current.id == "phase-2"
    assert "Current phase: Step 2 (2 of 4)" in current.additional_instructions
    assert "Phase duration: 2 weeks" in current.additional_instructions
    assert "Next phase: Reduce to 10 mg" in current.additional_instructions

    [last] = builder.set_current_phase(4).render()
    assert "Final phase - complete tapering schedule" in last.additional_instructions

    with pytest.raises(TaperingScheduleError) as exc:
        builder.set_current_phase(9)
    assert exc.value.code == ErrorCode.TAPER_PHASE_NOT_FOUND


def test_schedule_advisories(prednisone):
    builder = TaperingBuilder(prednisone).set_sequential_phases(
        [_phase(1, 40, 1), _phase(2, 10, 1), TaperingPhase("Short", 3, DoseInput(5, "mg"), DAILY, Duration(2, "days"))])
    codes = [a.code for a in builder.warnings]
    assert "LARGE_DOSE_CHANGE" in codes
    assert "SHORT_PHASE" in codes


def test_transition_note_and_serialize(prednisone):
    schedule = [_phase(1, 20, 1, note="Reduce to 10 mg"), _phase(2, 10, 1)]
    builder = create_tapering_builder(prednisone, start=START).set_sequential_phases(schedule)
    phases = builder.render()
    assert "Next phase: Reduce to 10 mg" in phases[0].additional_instructions

    data = builder.serialize()
    assert data["builderType"] == "TaperingBuilder"
    assert data["tapering"]["direction"] == DESCENDING
    assert [p["dose"] for p in data["tapering"]["phases"]] == ["20 mg", "10 mg"]


def test_without_phases_renders_single_instruction(prednisone):
    builder = TaperingBuilder(prednisone)
    [sig] = builder.add_dose(DoseInput(10, "mg")).add_timing(DAILY).add_route("oral").render()
    assert sig.text == "Take 10 mg by mouth once daily."
