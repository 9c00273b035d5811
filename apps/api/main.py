from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import redis
from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import generate_latest
from sqlalchemy.orm import Session

from .database import SessionLocal, engine, get_db
from .models import Base
from .seed import seed_reference_data
from . import crud, schemas

from agents.comment_analysis.events import EVENT_PREFIX, PIPELINE_EVENTS
from agents.comment_analysis.runner import create_worker
from agents.comment_analysis.submission import enqueue_comment_analysis
from services.config import Settings, load_settings
from services.container import ServiceContainer, build_services
from services.logging_config import configure_logging
from services.metrics import analysis_jobs_enqueued_total, comments_total
from services.realtime.broadcaster import WebSocketBroadcaster


logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Builds the API. Tests pass their own settings / service container
    (fake Redis, scripted LLM); production builds both from the environment.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.validate()
        configure_logging(settings)

        # ---- Create tables (no migrations) ----
        Base.metadata.create_all(bind=engine)

        if settings.seed_on_startup:
            db = SessionLocal()
            try:
                seed_reference_data(db)
            finally:
                db.close()

        container = services or build_services(settings, SessionLocal)
        broadcaster = WebSocketBroadcaster(container.bus, PIPELINE_EVENTS, strip_prefix=EVENT_PREFIX)
        await broadcaster.start()

        worker = None
        if settings.run_worker:
            worker = create_worker(container)
            worker.start()

        app.state.services = container
        app.state.broadcaster = broadcaster
        try:
            yield
        finally:
            await broadcaster.stop()
            if worker is not None:
                worker.close()
            container.close()

    app = FastAPI(title="Comment Insights API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origin.split(",")],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_services(request: Request) -> ServiceContainer:
        return request.app.state.services

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type="text/plain")

    # -----------------------------
    # Comments
    # -----------------------------
    @app.post("/comments", response_model=list[schemas.CommentOut], status_code=201)
    def create_comments(payload: schemas.CommentsCreate, db: Session = Depends(get_db)):
        comments = crud.create_comments(db, [c.model_dump() for c in payload.comments])
        comments_total.inc(len(comments))
        return comments

    @app.get("/comments/{comment_id}", response_model=schemas.CommentDetailOut)
    def get_comment(comment_id: str, db: Session = Depends(get_db)):
        comment = crud.get_comment(db, comment_id)
        if not comment:
            raise HTTPException(status_code=404, detail="Comment not found")

        return {
            "comment": comment,
            "insights": crud.get_comment_insights(db, comment_id),
            "intentions": crud.get_comment_intentions(db, comment_id),
        }

    @app.get("/insights", response_model=list[schemas.InsightOut])
    def list_insights(ai_generated: Optional[bool] = None, db: Session = Depends(get_db)):
        return crud.list_insights(db, ai_generated=ai_generated)

    # -----------------------------
    # Processing
    # -----------------------------
    @app.post("/processing/analyze", response_model=schemas.AnalyzeCommentsResponse)
    def analyze_comments(
        payload: schemas.AnalyzeCommentsRequest,
        services: ServiceContainer = Depends(get_services),
    ):
        """
        Queues the comments for analysis in batches and returns immediately.
        Analysis progress and failures arrive over the WebSocket, not here.
        """
        try:
            summary = enqueue_comment_analysis(
                services.analysis_queue,
                payload.comment_ids,
                payload.metadata,
                batch_size=services.settings.analysis_batch_size,
            )
        except redis.RedisError as e:
            logger.error("Failed to queue analysis jobs", extra={"error": str(e)})
            raise HTTPException(status_code=503, detail="Job queue unavailable")

        analysis_jobs_enqueued_total.inc(summary["details"]["jobsCreated"])
        return summary

    # -----------------------------
    # Agent logs
    # -----------------------------
    @app.get("/agent-logs", response_model=schemas.AgentLogsPage)
    def list_agent_logs(
        agent_name: Optional[str] = Query(default=None, pattern="^(leti|gro|pix)$"),
        success: Optional[bool] = None,
        created_after: Optional[datetime] = None,
        limit: int = Query(default=20, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
        db: Session = Depends(get_db),
    ):
        rows, total = crud.list_agent_logs(
            db,
            agent_name=agent_name,
            success=success,
            created_after=created_after,
            limit=limit,
            offset=offset,
        )

        logs = [
            schemas.AgentLogOut(
                id=row.id,
                job_id=row.job_id,
                comment_id=row.comment_id,
                agent_name=row.agent_name,
                processing_time_ms=row.processing_time_ms,
                success=row.success,
                error_message=row.error_message,
                metadata=json.loads(row.metadata_json) if row.metadata_json else None,
                created_at=row.created_at,
            )
            for row in rows
        ]
        return {
            "logs": logs,
            "pagination": {"total": total, "limit": limit, "offset": offset, "has_more": offset + len(rows) < total},
        }

    # -----------------------------
    # WebSocket
    # -----------------------------
    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.app.state.broadcaster.handle(websocket)

    @app.get("/ws-status")
    def websocket_status(request: Request):
        return {"status": "ok", **request.app.state.broadcaster.get_stats()}

    return app


app = create_app()
