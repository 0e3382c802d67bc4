# timetable_engine/feed_store.py
"""
SQL 上のフィードを、エンジンの外部協調者として提供する。

- 便レコード提供（route / service / direction で絞った便の停車列）
- 停留所カタログ（停留所名。表示専用で順序付けには使わない）
- 永続化シンク（フィールド単位の更新）

どの便を時刻表に含めるかは、ここでの単純な絞り込み以上のことはしない。
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .database import SessionLocal, Stop, StopTime, Trip
from .errors import PersistenceError
from .timetable_models import FieldUpdate, Selection, TripVisitSequence, VisitRecord

logger = logging.getLogger(__name__)

DEFAULT_DIRECTION_ID = "0"
WRITABLE_FIELDS = ("arrival_time", "departure_time")


def direction_name(direction_id: str) -> str:
    """GTFS の direction_id を表示名にする（0 = Outbound, 1 = Inbound）"""
    if direction_id == "0":
        return "Outbound"
    if direction_id == "1":
        return "Inbound"
    return f"Direction {direction_id}"


class FeedStore:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory
        self.stop_names: Dict[str, Optional[str]] = {}

    # ------------------------------------------------------------------
    # 停留所カタログ
    # ------------------------------------------------------------------

    def load_stops(self) -> None:
        """DBから停留所名キャッシュを構築する"""
        self.stop_names.clear()
        with self._session_factory() as db:
            for stop_id, stop_name in db.query(Stop.stop_id, Stop.stop_name).all():
                self.stop_names[stop_id] = stop_name
        logger.info("Loaded %d stops from DB", len(self.stop_names))

    def stop_name(self, stop_id: str) -> Optional[str]:
        return self.stop_names.get(stop_id)

    # ------------------------------------------------------------------
    # 便レコード提供
    # ------------------------------------------------------------------

    def _query_sequences(self, selection: Selection) -> List[TripVisitSequence]:
        with self._session_factory() as db:
            query = db.query(Trip.trip_id, Trip.direction_id).filter(
                Trip.route_id == selection.route_id,
                Trip.service_id == selection.service_id,
            )
            trips = [
                trip_id
                for trip_id, dir_id in query.all()
                if selection.direction_id is None
                or (dir_id or DEFAULT_DIRECTION_ID) == selection.direction_id
            ]
            if not trips:
                return []

            rows = (
                db.query(StopTime)
                .filter(StopTime.trip_id.in_(trips))
                .order_by(StopTime.trip_id, StopTime.stop_sequence)
                .all()
            )

            visits: Dict[str, List[VisitRecord]] = defaultdict(list)
            for row in rows:
                visits[row.trip_id].append(
                    VisitRecord(
                        stop_id=row.stop_id,
                        arrival=row.arrival_time,
                        departure=row.departure_time,
                        sequence_no=row.stop_sequence,
                    )
                )

        return [TripVisitSequence(trip_id=t, visits=tuple(visits.get(t, []))) for t in trips]

    async def fetch_sequences(self, selection: Selection) -> List[TripVisitSequence]:
        sequences = await asyncio.to_thread(self._query_sequences, selection)
        logger.info(
            "Fetched %d trips for route=%s service=%s direction=%s",
            len(sequences),
            selection.route_id,
            selection.service_id,
            selection.direction_id,
        )
        return sequences

    def available_directions(self, route_id: str, service_id: str) -> List[Dict[str, Any]]:
        """route + service の便を direction_id ごとに数える"""
        counts: Dict[str, int] = defaultdict(int)
        with self._session_factory() as db:
            rows = db.query(Trip.direction_id).filter(
                Trip.route_id == route_id,
                Trip.service_id == service_id,
            )
            for (dir_id,) in rows.all():
                counts[str(dir_id or DEFAULT_DIRECTION_ID)] += 1

        return [
            {"id": d, "name": direction_name(d), "trip_count": counts[d]}
            for d in sorted(counts)
        ]

    # ------------------------------------------------------------------
    # 永続化シンク
    # ------------------------------------------------------------------

    def _apply_update(self, update: FieldUpdate) -> None:
        unknown = [f for f in update.fields if f not in WRITABLE_FIELDS]
        if unknown:
            raise PersistenceError(update.trip_id, update.stop_id, f"unknown fields {unknown}")

        db: Session = self._session_factory()
        try:
            row = (
                db.query(StopTime)
                .filter(StopTime.trip_id == update.trip_id, StopTime.stop_id == update.stop_id)
                .first()
            )
            if row is None:
                raise PersistenceError(update.trip_id, update.stop_id, "stop_time row not found")
            for name, value in update.fields.items():
                setattr(row, name, value)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(update.trip_id, update.stop_id, str(e)) from e
        finally:
            db.close()

    async def write(self, update: FieldUpdate) -> None:
        await asyncio.to_thread(self._apply_update, update)
        logger.debug("Persisted %s/%s %s", update.trip_id, update.stop_id, update.fields)
