# timetable_engine/timetable_view.py
"""
開いている時刻表1枚分の状態（グリッドと編集コントローラを専有する）

- 構造変更（便の追加・削除、停車パターンの変更）のたびに正準順序とグリッドを作り直す。
  差分パッチはしない。
- 再構築は取り消し可能。実行中に新しい再構築が要求されたら古い方は捨てる。
- 編集は再構築の完了を待ってから適用する（構築と編集を交互に走らせない）。
- ビュー間でグリッドを共有しない。
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

from .cell_edit import CellEditController, ErrorCallback, PersistenceSink
from .config import Settings, get_settings
from .errors import AlignmentError
from .sequence_aligner import align, trips_out_of_order
from .time_matrix import build
from .timetable_models import AlignedGrid, EditOp, EditResult, Selection, TripVisitSequence

logger = logging.getLogger(__name__)


class TripRecordProvider(Protocol):
    async def fetch_sequences(self, selection: Selection) -> List[TripVisitSequence]:
        ...


class StopCatalog(Protocol):
    def stop_name(self, stop_id: str) -> Optional[str]:
        ...


class TimetableView:
    def __init__(
        self,
        selection: Selection,
        provider: TripRecordProvider,
        sink: PersistenceSink,
        catalog: Optional[StopCatalog] = None,
        settings: Optional[Settings] = None,
        on_persistence_error: Optional[ErrorCallback] = None,
    ) -> None:
        self.selection = selection
        self.settings = settings or get_settings()
        self._provider = provider
        self._catalog = catalog

        self.grid = AlignedGrid.empty()
        self.controller = CellEditController(
            self.grid,
            sink,
            max_hours=self.settings.max_service_hours,
            on_persistence_error=on_persistence_error,
        )

        self._generation = 0
        self._rebuild_task: Optional["asyncio.Task[None]"] = None
        self.last_error: Optional[AlignmentError] = None

    # ------------------------------------------------------------------
    # 再構築
    # ------------------------------------------------------------------

    def _compute(self, sequences: List[TripVisitSequence]) -> AlignedGrid:
        order = align(sequences, tie_break=self.settings.cycle_tie_break)
        grid = build(order, sequences)

        conflicted = trips_out_of_order(order, sequences)
        if conflicted:
            logger.info(
                "%d trip(s) follow a majority order instead of their own: %s",
                len(conflicted),
                ", ".join(conflicted),
            )
        return grid

    def _install(self, grid: AlignedGrid) -> None:
        self.grid = grid
        self.controller.rebind(grid)

    async def _rebuild(self, generation: int) -> None:
        # 発行済みの書き込みを先に反映させてから読み直す
        await self.controller.drain()
        sequences = await self._provider.fetch_sequences(self.selection)

        try:
            grid = await asyncio.to_thread(self._compute, sequences)
        except AlignmentError as e:
            if generation != self._generation:
                return
            logger.error("Alignment failed for %s; showing empty timetable: %s", self.selection, e)
            self.last_error = e
            self._install(AlignedGrid.empty())
            raise

        if generation != self._generation:
            logger.info("Discarding stale rebuild (generation %d)", generation)
            return

        self.last_error = None
        self._install(grid)
        logger.info(
            "Timetable ready: %d stops x %d trips (%d cells)",
            len(grid.stop_ids),
            len(grid.trip_ids),
            len(grid.cells),
        )

    def request_rebuild(self) -> "asyncio.Task[None]":
        """再構築を開始する。実行中のものがあれば取り消して置き換える"""
        if self._rebuild_task is not None and not self._rebuild_task.done():
            self._rebuild_task.cancel()
        self._generation += 1
        self._rebuild_task = asyncio.get_running_loop().create_task(self._rebuild(self._generation))
        return self._rebuild_task

    async def settle(self) -> Optional["asyncio.Task[None]"]:
        """最新の再構築が終わるまで待ち、そのタスクを返す"""
        while True:
            task = self._rebuild_task
            if task is None:
                return None
            await asyncio.wait([task])
            if task is self._rebuild_task:
                return task

    async def wait_ready(self) -> None:
        """最新の再構築の完了を待つ。整列に失敗していれば AlignmentError を送出する"""
        task = await self.settle()
        if task is None or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            raise exc

    async def rebuild(self) -> None:
        self.request_rebuild()
        await self.wait_ready()

    async def open(self) -> None:
        await self.rebuild()

    async def close(self) -> None:
        if self._rebuild_task is not None and not self._rebuild_task.done():
            self._rebuild_task.cancel()
            await asyncio.wait([self._rebuild_task])
        await self.controller.drain()

    # ------------------------------------------------------------------
    # 編集
    # ------------------------------------------------------------------

    async def request_edit(self, stop_id: str, trip_id: str, op: EditOp) -> EditResult:
        await self.settle()
        return self.controller.apply(stop_id, trip_id, op)

    # ------------------------------------------------------------------
    # プレゼンタ向け
    # ------------------------------------------------------------------

    def _stop_name(self, stop_id: str) -> Optional[str]:
        if self._catalog is None:
            return None
        return self._catalog.stop_name(stop_id)

    def snapshot(self) -> Dict[str, Any]:
        """(CanonicalOrder, AlignedGrid) を JSON にできる形で返す"""
        grid = self.grid
        cells = []
        for stop_id in grid.stop_ids:
            for trip_id in grid.trip_ids:
                cell = grid.get(stop_id, trip_id)
                if cell is None:
                    continue
                cells.append(
                    {
                        "stop_id": stop_id,
                        "trip_id": trip_id,
                        "arrival": cell.arrival,
                        "departure": cell.departure,
                        "state": cell.edit_state.value,
                    }
                )

        return {
            "selection": {
                "route_id": self.selection.route_id,
                "service_id": self.selection.service_id,
                "direction_id": self.selection.direction_id,
            },
            "stops": [
                {"stop_id": stop_id, "stop_name": self._stop_name(stop_id)}
                for stop_id in grid.stop_ids
            ],
            "trips": list(grid.trip_ids),
            "cells": cells,
            "warnings": [w.message() for w in grid.warnings],
            "dropped_edges": [list(e) for e in grid.order.dropped_edges],
            "show_arrival_departure": grid.show_arrival_departure(),
            "error": str(self.last_error) if self.last_error else None,
        }
