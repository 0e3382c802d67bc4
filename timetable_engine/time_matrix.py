# timetable_engine/time_matrix.py
"""
正準順序に各便の時刻を射影して AlignedGrid を作る。

- 補間や推定時刻は作らない。停車しないマスは「無い」まま残す。
- 正準順序に無い停留所を参照する記録は捨て、DataIntegrityWarning として返す。
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .errors import DataIntegrityWarning, IntegrityIssue, ValidationError
from .time_utils import time_to_seconds
from .timetable_models import AlignedGrid, CanonicalOrder, Cell, CellKey, TripVisitSequence

logger = logging.getLogger(__name__)

# 列の並び替え用。ここでは上限チェックを目的にしない
_SORT_MAX_HOURS = 10**3


def _earliest_seconds(seq: TripVisitSequence) -> Optional[int]:
    """便の中で最も早い時刻（秒）。時刻が1つも読めなければ None"""
    earliest: Optional[int] = None
    for visit in seq.visits:
        for value in (visit.arrival, visit.departure):
            if not value:
                continue
            try:
                sec = time_to_seconds(value, max_hours=_SORT_MAX_HOURS)
            except ValidationError:
                continue
            if earliest is None or sec < earliest:
                earliest = sec
    return earliest


def order_trips(sequences: Iterable[TripVisitSequence]) -> List[str]:
    """
    列の並び: 最も早い時刻の昇順 → trip_id。
    時刻を持たない便は末尾に trip_id 順で並べる。
    """
    keyed: Dict[str, Tuple[int, int, str]] = {}
    for seq in sequences:
        earliest = _earliest_seconds(seq)
        key = (0, earliest, seq.trip_id) if earliest is not None else (1, 0, seq.trip_id)
        if seq.trip_id not in keyed or key < keyed[seq.trip_id]:
            keyed[seq.trip_id] = key
    return sorted(keyed, key=keyed.__getitem__)


def build(order: CanonicalOrder, sequences: Iterable[TripVisitSequence]) -> AlignedGrid:
    """
    (stop_id, trip_id) → Cell の疎行列を構築する（純粋関数）。

    各便の記録を元の順に走査し、停留所の正準位置の行に置く。
    """
    sequences = list(sequences)
    known = set(order.stop_ids)

    cells: Dict[CellKey, Cell] = {}
    warnings: List[DataIntegrityWarning] = []

    for seq in sequences:
        placed: Set[str] = set()
        for visit in seq.visits:
            if visit.stop_id not in known:
                warnings.append(
                    DataIntegrityWarning(IntegrityIssue.UNKNOWN_STOP, seq.trip_id, visit.stop_id)
                )
                continue
            if visit.stop_id in placed:
                warnings.append(
                    DataIntegrityWarning(IntegrityIssue.DUPLICATE_STOP, seq.trip_id, visit.stop_id)
                )
                continue
            placed.add(visit.stop_id)
            cells[(visit.stop_id, seq.trip_id)] = Cell(
                arrival=visit.arrival,
                departure=visit.departure,
            )

    for w in warnings:
        logger.warning("Data integrity: %s", w.message())

    return AlignedGrid(
        order=order,
        trip_ids=order_trips(sequences),
        cells=cells,
        warnings=warnings,
    )
