from __future__ import annotations

import asyncio
import os
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest

# main.py はインポート時にアプリを組み立てるので、ファイル DB を作らないようにしておく
os.environ.setdefault("TIMETABLE_DB_URL", "sqlite://")

from timetable_engine.database import Stop, StopTime, Trip, create_session_factory, init_db
from timetable_engine.errors import PersistenceError
from timetable_engine.feed_store import FeedStore
from timetable_engine.timetable_models import FieldUpdate, TripVisitSequence, VisitRecord

Visit = Union[str, Tuple[str, Optional[str], Optional[str]]]


def _trip(trip_id: str, visits: Sequence[Visit]) -> TripVisitSequence:
    records = []
    for i, v in enumerate(visits, start=1):
        if isinstance(v, str):
            records.append(VisitRecord(stop_id=v, sequence_no=i))
        else:
            stop_id, arr, dep = v
            records.append(VisitRecord(stop_id=stop_id, arrival=arr, departure=dep, sequence_no=i))
    return TripVisitSequence(trip_id=trip_id, visits=tuple(records))


@pytest.fixture
def make_trip() -> Callable[[str, Sequence[Visit]], TripVisitSequence]:
    """("A", ["S1", ("S2", "08:00:00", "08:01:00")]) のように便を作る"""
    return _trip


class RecordingSink:
    """書き込みを記録するだけのシンク。fail_keys に含まれるセルは失敗させる"""

    def __init__(self) -> None:
        self.updates: List[FieldUpdate] = []
        self.fail_keys: set = set()
        # 値ごとの書き込み遅延（秒）。順序保証のテスト用
        self.delays: Dict[str, float] = {}

    async def write(self, update: FieldUpdate) -> None:
        delay = max((self.delays.get(v, 0.0) for v in update.fields.values() if v), default=0.0)
        if delay:
            await asyncio.sleep(delay)
        else:
            await asyncio.sleep(0)
        if (update.stop_id, update.trip_id) in self.fail_keys:
            raise PersistenceError(update.trip_id, update.stop_id, "store unavailable")
        self.updates.append(update)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def session_factory(tmp_path):
    factory = create_session_factory(f"sqlite:///{tmp_path / 'feed.db'}")
    init_db(factory)
    return factory


@pytest.fixture
def seeded_store(session_factory) -> FeedStore:
    """
    route R1 / service WKD:
      T1 (dir 0): S1 → S2 → S3
      T2 (dir 0): S1 → S3（S2 を通過）
      T4 (dir 未設定 = 0): S2 → S3
      T3 (dir 1): S3 → S1
    """
    with session_factory() as db:
        db.add_all(
            [
                Stop(stop_id="S1", stop_name="Central"),
                Stop(stop_id="S2", stop_name="Market St"),
                Stop(stop_id="S3", stop_name="Harbor"),
                Trip(trip_id="T1", route_id="R1", service_id="WKD", direction_id="0"),
                Trip(trip_id="T2", route_id="R1", service_id="WKD", direction_id="0"),
                Trip(trip_id="T3", route_id="R1", service_id="WKD", direction_id="1"),
                Trip(trip_id="T4", route_id="R1", service_id="WKD", direction_id=None),
                Trip(trip_id="X1", route_id="R9", service_id="WKD", direction_id="0"),
            ]
        )
        db.flush()
        db.add_all(
            [
                # 挿入順をわざと stop_sequence と逆にしておく
                StopTime(trip_id="T1", stop_sequence=3, stop_id="S3", arrival_time="08:20:00", departure_time="08:20:00"),
                StopTime(trip_id="T1", stop_sequence=2, stop_id="S2", arrival_time="08:10:00", departure_time="08:12:00"),
                StopTime(trip_id="T1", stop_sequence=1, stop_id="S1", arrival_time="08:00:00", departure_time="08:00:00"),
                StopTime(trip_id="T2", stop_sequence=10, stop_id="S1", arrival_time="09:00:00", departure_time="09:00:00"),
                StopTime(trip_id="T2", stop_sequence=20, stop_id="S3", arrival_time="09:15:00", departure_time="09:15:00"),
                StopTime(trip_id="T3", stop_sequence=1, stop_id="S3", arrival_time="10:00:00", departure_time="10:00:00"),
                StopTime(trip_id="T3", stop_sequence=2, stop_id="S1", arrival_time="10:20:00", departure_time="10:20:00"),
                StopTime(trip_id="T4", stop_sequence=1, stop_id="S2", arrival_time=None, departure_time="07:30:00"),
                StopTime(trip_id="T4", stop_sequence=2, stop_id="S3", arrival_time="07:40:00", departure_time="07:40:00"),
                StopTime(trip_id="X1", stop_sequence=1, stop_id="S1", arrival_time="06:00:00", departure_time="06:00:00"),
            ]
        )
        db.commit()

    store = FeedStore(session_factory)
    store.load_stops()
    return store
