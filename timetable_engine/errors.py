# timetable_engine/errors.py
"""
エンジンのエラー・警告の定義

- 例外（raise するもの）: 整列失敗 / 入力不正 / 欠損セル編集 / 書き戻し失敗
- 警告（戻り値で呼び出し側へ渡すもの）: データ整合性 / 到着 > 発車
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class TimetableEngineError(Exception):
    """エンジン由来の例外の基底クラス"""


class AlignmentError(TimetableEngineError):
    """
    正準順序を構築できなかった（Unsatisfiable）。

    循環除去後のグラフは必ず DAG になるため、通常は到達しない。
    発生した場合は内部不変条件の破れとして、ビューを空の時刻表に落とす。
    """

    def __init__(self, message: str, remaining_stops: list[str] | None = None) -> None:
        super().__init__(message)
        self.remaining_stops = remaining_stops or []


class ValidationError(TimetableEngineError):
    """時刻文字列が解釈できない（UnparsableTime）。状態は一切変更されない"""

    def __init__(self, value: object, reason: str) -> None:
        super().__init__(f"Unparsable time {value!r}: {reason}")
        self.value = value
        self.reason = reason


class AbsentCellError(TimetableEngineError):
    """停車しない (stop, trip) への編集。停車を新規作成はしない"""

    def __init__(self, stop_id: str, trip_id: str) -> None:
        super().__init__(f"Trip {trip_id} does not visit stop {stop_id}")
        self.stop_id = stop_id
        self.trip_id = trip_id


class PersistenceError(TimetableEngineError):
    """書き戻し失敗。メモリ上の値は保持され、再試行可能"""

    def __init__(self, trip_id: str, stop_id: str, message: str) -> None:
        super().__init__(f"Failed to persist {trip_id}/{stop_id}: {message}")
        self.trip_id = trip_id
        self.stop_id = stop_id


# ============================================================================
# 警告
# ============================================================================

class IntegrityIssue(str, Enum):
    UNKNOWN_STOP = "unknown_stop"
    DUPLICATE_STOP = "duplicate_stop"


@dataclass(frozen=True)
class DataIntegrityWarning:
    """該当の停車記録は捨てられたが、処理は続行された"""
    kind: IntegrityIssue
    trip_id: str
    stop_id: str

    def message(self) -> str:
        if self.kind is IntegrityIssue.UNKNOWN_STOP:
            return f"trip {self.trip_id} references stop {self.stop_id} missing from canonical order"
        return f"trip {self.trip_id} visits stop {self.stop_id} more than once; repeat ignored"


@dataclass(frozen=True)
class ArrivalAfterDepartureWarning:
    """同一セル内で到着 > 発車（技術停車などで正当な場合もあるので拒否はしない）"""
    trip_id: str
    stop_id: str
    arrival: str
    departure: str

    def message(self) -> str:
        return (
            f"arrival {self.arrival} is after departure {self.departure} "
            f"(trip {self.trip_id}, stop {self.stop_id})"
        )


@dataclass(frozen=True)
class NothingToLinkWarning:
    """到着・発車とも未設定のセルは連動できない"""
    trip_id: str
    stop_id: str

    def message(self) -> str:
        return f"cell {self.trip_id}/{self.stop_id} has no time to link"
