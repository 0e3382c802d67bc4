# timetable_engine/database.py
from sqlalchemy import Column, ForeignKey, Integer, String, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import get_settings

Base = declarative_base()


class Stop(Base):
    __tablename__ = "stops"

    stop_id = Column(String, primary_key=True, index=True)
    stop_name = Column(String, nullable=True)


class Trip(Base):
    __tablename__ = "trips"

    trip_id = Column(String, primary_key=True, index=True)
    route_id = Column(String, index=True, nullable=False)
    service_id = Column(String, index=True, nullable=False)
    direction_id = Column(String, nullable=True)   # 未設定は "0" 扱い


class StopTime(Base):
    __tablename__ = "stop_times"

    trip_id = Column(String, ForeignKey("trips.trip_id"), primary_key=True, index=True)
    stop_sequence = Column(Integer, primary_key=True)
    stop_id = Column(String, ForeignKey("stops.stop_id"), index=True, nullable=False)
    # GTFS の "HH:MM:SS"（24 時以降あり）をそのまま文字列で持つ
    arrival_time = Column(String, nullable=True)
    departure_time = Column(String, nullable=True)


def create_session_factory(database_url: str) -> sessionmaker:
    """URL ごとにエンジンとセッションファクトリを作る（テストは tmp_path の SQLite を渡す）"""
    connect_args = {}
    if database_url.startswith("sqlite"):
        # SQLite はデフォルトでマルチスレッド通信を許可しないため check_same_thread=False が必要
        # （書き戻しは asyncio.to_thread のワーカースレッドから行う）
        connect_args["check_same_thread"] = False
    engine = create_engine(database_url, connect_args=connect_args)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


SessionLocal = create_session_factory(get_settings().database_url)


def init_db(session_factory: sessionmaker = SessionLocal) -> None:
    """テーブルを作成する"""
    Base.metadata.create_all(bind=session_factory.kw["bind"])
