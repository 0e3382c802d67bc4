# timetable_engine/main.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .cell_edit import PersistenceSink
from .config import Settings, get_settings
from .database import SessionLocal, init_db
from .errors import AbsentCellError, AlignmentError, PersistenceError
from .errors import ValidationError as TimeValidationError
from .feed_store import FeedStore
from .timetable_models import EditKind, EditOp, Selection
from .timetable_view import TimetableView

load_dotenv()

logger = logging.getLogger(__name__)


class OpenTimetableRequest(BaseModel):
    route_id: str
    service_id: str
    direction_id: Optional[str] = None


class EditRequest(BaseModel):
    stop_id: str
    trip_id: str
    op: EditKind
    value: Optional[str] = None


def create_app(
    store: Optional[FeedStore] = None,
    sink: Optional[PersistenceSink] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    store / sink を差し替えればテストや別ストアでも動く。
    sink 未指定時は store 自身（SQL への書き戻し）を使う。
    """
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)

    if store is None:
        init_db(SessionLocal)
        store = FeedStore(SessionLocal)
    sink = sink or store

    app = FastAPI()
    app.state.store = store
    app.state.views = {}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.frontend_urls,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        store.load_stops()

    @app.on_event("shutdown")
    async def shutdown_event():
        for view in list(app.state.views.values()):
            await view.close()
        app.state.views.clear()
        logger.info("All timetable views closed")

    def _get_view(view_id: str) -> TimetableView:
        view = app.state.views.get(view_id)
        if view is None:
            raise HTTPException(status_code=404, detail=f"Timetable view not found: {view_id}")
        return view

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/routes/{route_id}/directions")
    async def get_directions(route_id: str, service_id: str):
        logger.info("GET /api/routes/%s/directions service_id=%s", route_id, service_id)
        return {"directions": store.available_directions(route_id, service_id)}

    @app.post("/api/timetables")
    async def open_timetable(req: OpenTimetableRequest):
        selection = Selection(req.route_id, req.service_id, req.direction_id)
        view = TimetableView(selection, provider=store, sink=sink, catalog=store, settings=settings)

        try:
            await view.open()
        except AlignmentError as e:
            raise HTTPException(status_code=500, detail=f"Alignment failed: {e}")

        view_id = uuid.uuid4().hex
        app.state.views[view_id] = view
        logger.info("Opened timetable view %s for %s", view_id, selection)
        return {"view_id": view_id, "timetable": view.snapshot()}

    @app.get("/api/timetables/{view_id}")
    async def get_timetable(view_id: str):
        view = _get_view(view_id)
        await view.settle()
        return view.snapshot()

    @app.post("/api/timetables/{view_id}/rebuild")
    async def rebuild_timetable(view_id: str):
        view = _get_view(view_id)
        try:
            await view.rebuild()
        except AlignmentError as e:
            raise HTTPException(status_code=500, detail=f"Alignment failed: {e}")
        return view.snapshot()

    @app.post("/api/timetables/{view_id}/edits")
    async def edit_cell(view_id: str, req: EditRequest):
        view = _get_view(view_id)
        try:
            result = await view.request_edit(req.stop_id, req.trip_id, EditOp(req.op, req.value))
        except TimeValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except AbsentCellError as e:
            raise HTTPException(status_code=404, detail=str(e))

        persisted: Optional[bool] = None
        persistence_error: Optional[str] = None
        if result.pending is not None:
            try:
                await result.pending
                persisted = True
            except PersistenceError as e:
                # メモリ上の値は保持される。フロント側で再試行・通知する
                persisted = False
                persistence_error = str(e)

        body: Dict[str, Any] = {
            "stop_id": result.stop_id,
            "trip_id": result.trip_id,
            "arrival": result.cell.arrival,
            "departure": result.cell.departure,
            "state": result.state.value,
            "fields": result.update.fields if result.update else {},
            "warnings": [w.message() for w in result.warnings],
            "persisted": persisted,
            "persistence_error": persistence_error,
        }
        return body

    @app.delete("/api/timetables/{view_id}")
    async def close_timetable(view_id: str):
        view = _get_view(view_id)
        await view.close()
        del app.state.views[view_id]
        return {"closed": view_id}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # python -m timetable_engine.main
    uvicorn.run(app, host="0.0.0.0", port=8000)
