from __future__ import annotations

import asyncio

import pytest

from timetable_engine.cell_edit import CellEditController
from timetable_engine.errors import (
    AbsentCellError,
    ArrivalAfterDepartureWarning,
    NothingToLinkWarning,
    PersistenceError,
    ValidationError,
)
from timetable_engine.sequence_aligner import align
from timetable_engine.time_matrix import build
from timetable_engine.timetable_models import Cell, CellEditState, EditOp, cell_edit_state


@pytest.fixture
def grid(make_trip):
    trips = [
        make_trip(
            "T1",
            [
                ("S1", "08:00:00", "08:00:00"),
                ("S2", None, "08:10:00"),
                ("S3", "08:20:00", "08:22:00"),
                ("S4", None, None),
            ],
        ),
        make_trip("T2", [("S1", "09:00:00", "09:00:00"), ("S3", "09:20:00", "09:20:00")]),
    ]
    return build(align(trips), trips)


def test_unlinking_a_linked_cell_writes_nothing(grid, sink) -> None:
    async def scenario():
        controller = CellEditController(grid, sink)
        assert controller.state("S1", "T1") is CellEditState.LINKED

        first = controller.toggle_link("S1", "T1")
        second = controller.toggle_link("S1", "T1")
        await controller.drain()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.state is CellEditState.UNLINKED
    assert second.state is CellEditState.UNLINKED
    assert first.update is None and first.pending is None
    assert grid.get("S1", "T1") == Cell("08:00:00", "08:00:00")
    assert sink.updates == []


def test_linking_falls_back_to_departure_when_arrival_missing(grid, sink) -> None:
    async def scenario():
        controller = CellEditController(grid, sink)
        result = controller.toggle_link("S2", "T1")
        await result.pending
        return result

    result = asyncio.run(scenario())

    assert result.state is CellEditState.LINKED
    assert grid.get("S2", "T1") == Cell("08:10:00", "08:10:00")
    assert [u.fields for u in sink.updates] == [{"arrival_time": "08:10:00"}]


def test_linking_uses_arrival_as_primary(grid, sink) -> None:
    async def scenario():
        controller = CellEditController(grid, sink)
        first = controller.toggle_link("S3", "T1")
        # 連動済みなので2回目は UNLINKED 表示に戻るだけ
        second = controller.toggle_link("S3", "T1")
        await controller.drain()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.state is CellEditState.LINKED
    assert second.update is None
    assert grid.get("S3", "T1") == Cell("08:20:00", "08:20:00")
    assert [u.fields for u in sink.updates] == [{"departure_time": "08:20:00"}]


def test_linking_empty_cell_is_a_noop_with_warning(grid, sink) -> None:
    async def scenario():
        controller = CellEditController(grid, sink)
        return controller.toggle_link("S4", "T1")

    result = asyncio.run(scenario())

    assert result.state is CellEditState.UNLINKED
    assert result.update is None
    assert isinstance(result.warnings[0], NothingToLinkWarning)
    assert sink.updates == []


def test_edits_on_absent_cell_are_rejected(grid, sink) -> None:
    """T2 は S2 に停車しない。停車を新たに作らない"""

    async def scenario():
        controller = CellEditController(grid, sink)
        for op in (
            EditOp("set_linked_time", "08:00"),
            EditOp("set_arrival", "08:00"),
            EditOp("set_departure", "08:00"),
            EditOp("toggle_link"),
        ):
            with pytest.raises(AbsentCellError):
                controller.apply("S2", "T2", op)
        await controller.drain()

    asyncio.run(scenario())

    assert not grid.has_cell("S2", "T2")
    assert sink.updates == []


def test_set_linked_time_writes_both_fields_once(grid, sink) -> None:
    async def scenario():
        controller = CellEditController(grid, sink)
        result = controller.set_linked_time("S3", "T2", "9:25")
        await result.pending
        return result

    result = asyncio.run(scenario())

    assert grid.get("S3", "T2") == Cell("09:25:00", "09:25:00")
    assert result.state is CellEditState.LINKED
    assert [u.fields for u in sink.updates] == [
        {"arrival_time": "09:25:00", "departure_time": "09:25:00"}
    ]


def test_editing_one_side_of_linked_cell_unlinks_it(grid, sink) -> None:
    async def scenario():
        controller = CellEditController(grid, sink)
        result = controller.set_departure("S1", "T2", "09:02:00")
        await controller.drain()
        return result

    result = asyncio.run(scenario())

    assert result.state is CellEditState.UNLINKED
    assert grid.get("S1", "T2") == Cell("09:00:00", "09:02:00")
    assert [u.fields for u in sink.updates] == [{"departure_time": "09:02:00"}]


def test_unparsable_time_changes_nothing(grid, sink) -> None:
    async def scenario():
        controller = CellEditController(grid, sink)
        for bad in ("abc", "8:60", "12:00:75", "48:00:01", ""):
            with pytest.raises(ValidationError):
                controller.set_arrival("S3", "T1", bad)
        await controller.drain()

    asyncio.run(scenario())

    assert grid.get("S3", "T1") == Cell("08:20:00", "08:22:00")
    assert sink.updates == []


def test_service_past_midnight_is_accepted(grid, sink) -> None:
    async def scenario():
        controller = CellEditController(grid, sink)
        controller.set_arrival("S3", "T1", "25:30")
        controller.set_departure("S3", "T1", "48:00:00")
        await controller.drain()

    asyncio.run(scenario())

    assert grid.get("S3", "T1") == Cell("25:30:00", "48:00:00")


def test_arrival_after_departure_is_only_a_warning(grid, sink) -> None:
    async def scenario():
        controller = CellEditController(grid, sink)
        result = controller.set_arrival("S3", "T1", "08:30:00")
        await result.pending
        return result

    result = asyncio.run(scenario())

    assert grid.get("S3", "T1").arrival == "08:30:00"
    assert isinstance(result.warnings[0], ArrivalAfterDepartureWarning)
    assert len(sink.updates) == 1


def test_clearing_a_field_with_none(grid, sink) -> None:
    async def scenario():
        controller = CellEditController(grid, sink)
        await controller.set_arrival("S1", "T1", None).pending

    asyncio.run(scenario())

    assert grid.get("S1", "T1") == Cell(None, "08:00:00")
    assert sink.updates[0].fields == {"arrival_time": None}


def test_writes_to_same_cell_keep_submission_order(grid, sink) -> None:
    """先に出した書き込みが遅くても、後の書き込みが追い越さない"""
    sink.delays = {"08:01:00": 0.05, "08:02:00": 0.01}

    async def scenario():
        controller = CellEditController(grid, sink)
        controller.set_departure("S3", "T1", "08:01:00")
        controller.set_departure("S3", "T1", "08:02:00")
        controller.set_departure("S3", "T1", "08:03:00")
        await controller.drain()

    asyncio.run(scenario())

    assert [u.fields["departure_time"] for u in sink.updates] == ["08:01:00", "08:02:00", "08:03:00"]
    assert grid.get("S3", "T1").departure == "08:03:00"


def test_persistence_failure_keeps_in_memory_value(grid, sink) -> None:
    sink.fail_keys = {("S1", "T2")}
    reported = []

    async def scenario():
        controller = CellEditController(grid, sink, on_persistence_error=reported.append)
        result = controller.set_linked_time("S1", "T2", "09:05:00")
        with pytest.raises(PersistenceError):
            await result.pending
        errors = await controller.drain()

        # ストアが復旧したら現在値で再試行できる
        sink.fail_keys = set()
        await controller.retry("S1", "T2")
        return errors

    errors = asyncio.run(scenario())

    assert grid.get("S1", "T2") == Cell("09:05:00", "09:05:00")
    assert len(errors) == 1 and reported == errors
    assert [u.fields for u in sink.updates] == [
        {"arrival_time": "09:05:00", "departure_time": "09:05:00"}
    ]


def test_state_is_the_same_however_the_cell_was_produced(grid, sink, make_trip) -> None:
    async def scenario():
        controller = CellEditController(grid, sink)
        controller.set_arrival("S3", "T1", "08:40:00")
        controller.set_departure("S3", "T1", "08:45:00")
        controller.toggle_link("S3", "T1")
        await controller.drain()

    asyncio.run(scenario())

    edited = grid.get("S3", "T1")
    fresh_trips = [make_trip("T1", [("S3", edited.arrival, edited.departure)])]
    fresh = build(align(fresh_trips), fresh_trips).get("S3", "T1")

    assert edited == fresh
    assert cell_edit_state(edited) is cell_edit_state(fresh) is CellEditState.LINKED


def test_mixed_time_spellings_stay_linked(make_trip, sink) -> None:
    trips = [make_trip("T1", [("S1", "8:05:00", "8:05:00")])]
    grid = build(align(trips), trips)

    async def scenario():
        controller = CellEditController(grid, sink)
        edited = controller.set_arrival("S1", "T1", "8:05")
        toggled = controller.toggle_link("S1", "T1")
        await controller.drain()
        return edited, toggled

    edited, toggled = asyncio.run(scenario())

    assert grid.get("S1", "T1") == Cell("08:05:00", "8:05:00")
    assert edited.state is CellEditState.LINKED
    # 同じ時刻なので連動解除は表示だけ。書き込みは set_arrival の1回のみ
    assert toggled.state is CellEditState.UNLINKED and toggled.pending is None
    assert [u.fields for u in sink.updates] == [{"arrival_time": "08:05:00"}]


class BrokenSink:
    async def write(self, update) -> None:
        raise RuntimeError("disk full")


def test_unexpected_sink_error_is_reported_as_persistence_error(grid) -> None:
    reported = []

    async def scenario():
        controller = CellEditController(grid, BrokenSink(), on_persistence_error=reported.append)
        result = controller.set_arrival("S1", "T1", "08:01")
        with pytest.raises(PersistenceError, match="disk full"):
            await result.pending
        return await controller.drain()

    errors = asyncio.run(scenario())

    assert grid.get("S1", "T1").arrival == "08:01:00"
    assert len(errors) == 1 and reported == errors
    assert (errors[0].trip_id, errors[0].stop_id) == ("T1", "S1")
