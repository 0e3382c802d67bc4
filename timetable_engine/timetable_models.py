# timetable_engine/timetable_models.py
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Literal, Optional, Tuple, Union

from .errors import ArrivalAfterDepartureWarning, DataIntegrityWarning, NothingToLinkWarning
from .time_utils import same_time

CellKey = Tuple[str, str]  # (stop_id, trip_id)
Edge = Tuple[str, str]     # (前の stop_id, 後の stop_id)


@dataclass(frozen=True)
class VisitRecord:
    """1停留所分の到着・発車時刻（GTFS の "HH:MM:SS" 文字列のまま）"""
    stop_id: str
    arrival: Optional[str] = None
    departure: Optional[str] = None
    sequence_no: Optional[int] = None


@dataclass(frozen=True)
class TripVisitSequence:
    """
    1本の便の停車列。

    NOTE:
      - 並び順が順序付けに使う唯一の情報（時刻は順序に関与しない）。
      - 同じ stop_id の再訪は想定しない（来た場合は警告を出して 2 回目以降を無視）。
    """
    trip_id: str
    visits: Tuple[VisitRecord, ...] = ()

    @property
    def stop_ids(self) -> List[str]:
        return [v.stop_id for v in self.visits]


@dataclass(frozen=True)
class Selection:
    """(route, service, direction) の組。どの便を含めるかは外部が決める"""
    route_id: str
    service_id: str
    direction_id: Optional[str] = None


@dataclass(frozen=True)
class CanonicalOrder:
    """
    時刻表の行軸になる正準停留所順序。

    dropped_edges は循環除去で捨てた先行関係。
    これに関わる便については部分列性が保証されない（多数決の順序になる）。
    """
    stop_ids: Tuple[str, ...] = ()
    dropped_edges: Tuple[Edge, ...] = ()

    def __iter__(self) -> Iterator[str]:
        return iter(self.stop_ids)

    def __len__(self) -> int:
        return len(self.stop_ids)

    def __contains__(self, stop_id: object) -> bool:
        return stop_id in self.stop_ids

    def positions(self) -> Dict[str, int]:
        return {stop_id: i for i, stop_id in enumerate(self.stop_ids)}


# ============================================================================
# セル
# ============================================================================

class CellEditState(str, Enum):
    LINKED = "linked"
    UNLINKED = "unlinked"


@dataclass
class Cell:
    """グリッドの1マス。存在しないマス（停車しない）は Cell 自体を持たない"""
    arrival: Optional[str] = None
    departure: Optional[str] = None

    @property
    def edit_state(self) -> CellEditState:
        return cell_edit_state(self)


def cell_edit_state(cell: Cell) -> CellEditState:
    """
    セルの値だけから編集モードを導出する。

    - 到着・発車が両方あり、かつ同じ時刻 → LINKED（"8:05:00" と "08:05:00" も同じ）
    - それ以外（値が違う / 片方だけ / 両方なし）→ UNLINKED

    状態フラグは保存もキャッシュもしない。
    """
    if same_time(cell.arrival, cell.departure):
        return CellEditState.LINKED
    return CellEditState.UNLINKED


@dataclass
class AlignedGrid:
    """
    (stop_id, trip_id) → Cell の疎な表。

    行は CanonicalOrder、列は trip_ids（始発時刻順）に従う。
    キーが無いマスは「停車しない」を意味し、表示上は空欄になる。
    """
    order: CanonicalOrder
    trip_ids: List[str]
    cells: Dict[CellKey, Cell] = field(default_factory=dict)
    warnings: List[DataIntegrityWarning] = field(default_factory=list)

    @property
    def stop_ids(self) -> Tuple[str, ...]:
        return self.order.stop_ids

    def get(self, stop_id: str, trip_id: str) -> Optional[Cell]:
        return self.cells.get((stop_id, trip_id))

    def has_cell(self, stop_id: str, trip_id: str) -> bool:
        return (stop_id, trip_id) in self.cells

    def row(self, stop_id: str) -> List[Optional[Cell]]:
        """1行分（列順）。停車しない便は None"""
        return [self.cells.get((stop_id, trip_id)) for trip_id in self.trip_ids]

    def column(self, trip_id: str) -> List[Optional[Cell]]:
        return [self.cells.get((stop_id, trip_id)) for stop_id in self.stop_ids]

    def show_arrival_departure(self) -> bool:
        """到着・発車を分けて表示すべきセルが1つでもあるか"""
        return any(c.edit_state is CellEditState.UNLINKED for c in self.cells.values())

    @classmethod
    def empty(cls) -> "AlignedGrid":
        return cls(order=CanonicalOrder(), trip_ids=[])


# ============================================================================
# 編集
# ============================================================================

TimeField = Literal["arrival_time", "departure_time"]
EditKind = Literal["set_linked_time", "set_arrival", "set_departure", "toggle_link"]


@dataclass(frozen=True)
class FieldUpdate:
    """永続化先へ送るフィールド単位の更新"""
    trip_id: str
    stop_id: str
    fields: Dict[TimeField, Optional[str]]


@dataclass(frozen=True)
class EditOp:
    """プレゼンタからの編集要求"""
    kind: EditKind
    value: Optional[str] = None


EditWarning = Union[ArrivalAfterDepartureWarning, NothingToLinkWarning]


@dataclass
class EditResult:
    """
    編集の結果。

    state はこの操作後にプレゼンタが表示すべきモード。
    通常はセル値からの導出結果と同じだが、LINKED → UNLINKED のトグルだけは
    値を変えずに「別々に編集できる表示」へ切り替えるので UNLINKED になる。
    """
    stop_id: str
    trip_id: str
    cell: Cell
    state: CellEditState
    update: Optional[FieldUpdate] = None
    warnings: List[EditWarning] = field(default_factory=list)
    # 書き戻しタスク（書き込みが無い操作では None）
    pending: Optional["asyncio.Task[None]"] = field(default=None, repr=False, compare=False)
