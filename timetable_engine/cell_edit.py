# timetable_engine/cell_edit.py
"""
セル編集コントローラ

セルごとの「連動 (LINKED) / 非連動 (UNLINKED)」状態機械。
状態は毎回セルの値から導出し、フラグとしては持たない。

書き込みの流れ:
  1. 入力を検証する（解釈できなければここで例外。何も変更しない）
  2. メモリ上のグリッドを同期的に更新する
  3. 永続化を非同期タスクとして発行する（同じセルへの書き込みは発行順に直列化）

書き込みに失敗してもメモリ上の値は巻き戻さない。
PersistenceError としてコールバック・errors・タスク結果で呼び出し側へ知らせる。
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Protocol

from .errors import (
    AbsentCellError,
    ArrivalAfterDepartureWarning,
    NothingToLinkWarning,
    PersistenceError,
    ValidationError,
)
from .time_utils import DEFAULT_MAX_HOURS, normalize_time, time_to_seconds
from .timetable_models import (
    AlignedGrid,
    Cell,
    CellEditState,
    CellKey,
    EditOp,
    EditResult,
    EditWarning,
    FieldUpdate,
    TimeField,
    cell_edit_state,
)

logger = logging.getLogger(__name__)

ARRIVAL: TimeField = "arrival_time"
DEPARTURE: TimeField = "departure_time"


class PersistenceSink(Protocol):
    """フィールド単位の更新を受け取り、成否を非同期に返す外部ストア"""

    async def write(self, update: FieldUpdate) -> None:
        ...


ErrorCallback = Callable[[PersistenceError], None]


class CellEditController:
    def __init__(
        self,
        grid: AlignedGrid,
        sink: PersistenceSink,
        max_hours: int = DEFAULT_MAX_HOURS,
        on_persistence_error: Optional[ErrorCallback] = None,
    ) -> None:
        self.grid = grid
        self._sink = sink
        self._max_hours = max_hours
        self._on_persistence_error = on_persistence_error

        # セルごとの最後の書き込みタスク。次の書き込みはこれの完了を待つ
        self._tails: Dict[CellKey, "asyncio.Task[None]"] = {}

        # 発生した書き戻し失敗（再試行・通知用）
        self.errors: List[PersistenceError] = []

    def rebind(self, grid: AlignedGrid) -> None:
        """再構築後の新しいグリッドに付け替える。発行済みの書き込みはそのまま続く"""
        self.grid = grid

    # ------------------------------------------------------------------
    # 読み取り
    # ------------------------------------------------------------------

    def _require_cell(self, stop_id: str, trip_id: str) -> Cell:
        cell = self.grid.get(stop_id, trip_id)
        if cell is None:
            raise AbsentCellError(stop_id, trip_id)
        return cell

    def state(self, stop_id: str, trip_id: str) -> CellEditState:
        return cell_edit_state(self._require_cell(stop_id, trip_id))

    # ------------------------------------------------------------------
    # 編集操作
    # ------------------------------------------------------------------

    def _parse(self, value: Optional[str]) -> Optional[str]:
        """None はフィールドのクリア。それ以外は "HH:MM:SS" に正規化する"""
        if value is None:
            return None
        return normalize_time(value, self._max_hours)

    def set_linked_time(self, stop_id: str, trip_id: str, value: Optional[str]) -> EditResult:
        """到着 = 発車 = value。両フィールドを1回の書き込みで永続化する"""
        t = self._parse(value)
        cell = self._require_cell(stop_id, trip_id)

        cell.arrival = t
        cell.departure = t
        return self._commit(stop_id, trip_id, cell, {ARRIVAL: t, DEPARTURE: t})

    def set_arrival(self, stop_id: str, trip_id: str, value: Optional[str]) -> EditResult:
        """
        到着時刻だけを変更する。
        連動中のセルでも許可し、値がずれれば導出状態は自然に UNLINKED になる。
        """
        t = self._parse(value)
        cell = self._require_cell(stop_id, trip_id)

        cell.arrival = t
        return self._commit(stop_id, trip_id, cell, {ARRIVAL: t})

    def set_departure(self, stop_id: str, trip_id: str, value: Optional[str]) -> EditResult:
        t = self._parse(value)
        cell = self._require_cell(stop_id, trip_id)

        cell.departure = t
        return self._commit(stop_id, trip_id, cell, {DEPARTURE: t})

    def toggle_link(self, stop_id: str, trip_id: str) -> EditResult:
        """
        連動 / 非連動を切り替える。

        - LINKED → UNLINKED: 書き込みなし。値は同じまま、別々に編集できる表示にするだけ。
          何度繰り返しても書き込みは発生しない。
        - UNLINKED → LINKED: 到着を主として 発車 = 到着 を書き込む。
          到着が無く発車だけある場合は 到着 = 発車。
          両方無い場合は連動できないので何もしない（警告を返す）。
        """
        cell = self._require_cell(stop_id, trip_id)

        if cell_edit_state(cell) is CellEditState.LINKED:
            return EditResult(
                stop_id=stop_id,
                trip_id=trip_id,
                cell=cell,
                state=CellEditState.UNLINKED,
            )

        if cell.arrival is not None:
            cell.departure = cell.arrival
            fields = {DEPARTURE: cell.departure}
        elif cell.departure is not None:
            cell.arrival = cell.departure
            fields = {ARRIVAL: cell.arrival}
        else:
            logger.info("Nothing to link for trip %s at stop %s", trip_id, stop_id)
            return EditResult(
                stop_id=stop_id,
                trip_id=trip_id,
                cell=cell,
                state=CellEditState.UNLINKED,
                warnings=[NothingToLinkWarning(trip_id, stop_id)],
            )

        return self._commit(stop_id, trip_id, cell, fields)

    def apply(self, stop_id: str, trip_id: str, op: EditOp) -> EditResult:
        """プレゼンタからの EditOp を対応する操作に振り分ける"""
        if op.kind == "set_linked_time":
            return self.set_linked_time(stop_id, trip_id, op.value)
        if op.kind == "set_arrival":
            return self.set_arrival(stop_id, trip_id, op.value)
        if op.kind == "set_departure":
            return self.set_departure(stop_id, trip_id, op.value)
        if op.kind == "toggle_link":
            return self.toggle_link(stop_id, trip_id)
        raise ValueError(f"Unknown edit operation: {op.kind}")

    def retry(self, stop_id: str, trip_id: str) -> "asyncio.Task[None]":
        """失敗した書き込みの再試行。メモリ上の現在値（正）を両フィールドとも書き直す"""
        cell = self._require_cell(stop_id, trip_id)
        update = FieldUpdate(
            trip_id=trip_id,
            stop_id=stop_id,
            fields={ARRIVAL: cell.arrival, DEPARTURE: cell.departure},
        )
        return self._schedule(update)

    # ------------------------------------------------------------------
    # 書き込み
    # ------------------------------------------------------------------

    def _check_order(self, stop_id: str, trip_id: str, cell: Cell) -> List[EditWarning]:
        """到着 > 発車 は拒否せず警告だけ返す"""
        if cell.arrival is None or cell.departure is None:
            return []
        try:
            arr = time_to_seconds(cell.arrival, self._max_hours)
            dep = time_to_seconds(cell.departure, self._max_hours)
        except ValidationError:
            # フィードから来た既存値が読めないケース。比較はしない
            return []
        if arr <= dep:
            return []

        warning = ArrivalAfterDepartureWarning(trip_id, stop_id, cell.arrival, cell.departure)
        logger.warning("%s", warning.message())
        return [warning]

    def _commit(
        self,
        stop_id: str,
        trip_id: str,
        cell: Cell,
        fields: Dict[TimeField, Optional[str]],
    ) -> EditResult:
        update = FieldUpdate(trip_id=trip_id, stop_id=stop_id, fields=dict(fields))
        warnings = self._check_order(stop_id, trip_id, cell)
        pending = self._schedule(update)

        logger.debug("Edit %s/%s -> %s", trip_id, stop_id, update.fields)
        return EditResult(
            stop_id=stop_id,
            trip_id=trip_id,
            cell=cell,
            state=cell_edit_state(cell),
            update=update,
            warnings=warnings,
            pending=pending,
        )

    def _schedule(self, update: FieldUpdate) -> "asyncio.Task[None]":
        key = (update.stop_id, update.trip_id)
        previous = self._tails.get(key)
        task = asyncio.get_running_loop().create_task(self._write_after(previous, update))
        self._tails[key] = task
        task.add_done_callback(lambda t, key=key: self._release(key, t))
        return task

    async def _write_after(
        self,
        previous: Optional["asyncio.Task[None]"],
        update: FieldUpdate,
    ) -> None:
        if previous is not None and not previous.done():
            # 前の書き込みの成否は問わず、完了だけ待つ
            await asyncio.wait([previous])

        try:
            await self._sink.write(update)
        except PersistenceError as e:
            self._report(e)
            raise
        except Exception as e:
            # シンク固有の例外も PersistenceError として同じ経路で通知する
            error = PersistenceError(update.trip_id, update.stop_id, str(e))
            self._report(error)
            raise error from e

    def _report(self, error: PersistenceError) -> None:
        self.errors.append(error)
        logger.error("Persistence failed (in-memory value kept): %s", error)
        if self._on_persistence_error is not None:
            self._on_persistence_error(error)

    def _release(self, key: CellKey, task: "asyncio.Task[None]") -> None:
        if self._tails.get(key) is task:
            del self._tails[key]
        if not task.cancelled():
            # 失敗は errors / コールバックで通知済み。未取得警告を出さないよう参照だけしておく
            task.exception()

    async def drain(self) -> List[PersistenceError]:
        """発行済みの書き込みがすべて終わるまで待ち、これまでの失敗一覧を返す"""
        while True:
            pending = [t for t in self._tails.values() if not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        return list(self.errors)
