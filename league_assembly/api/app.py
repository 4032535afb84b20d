"""
League Assembly — HTTP and WebSocket API.

FastAPI application providing:
- Amendments (create, vote, close, apply, expiry sweep)
- Motions (create, second, vote, withdraw)
- Chair powers (rulings, emergency moderation, audit trail)
- Discussion posts
- Speaker queue and presence (HTTP reads/writes plus the live socket)

Every structured failure leaves as ``{"error": message}`` with the status of
its ``AssemblyError`` class; validation failures add ``"fields"``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import Body, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PayloadError

from league_assembly.assembly.schema import (
    AmendmentCreate,
    ChairRuling,
    EmergencyAction,
    ModVoteCast,
    MotionCreate,
    MotionNote,
    PostCreate,
    PostUpdate,
    QueueRequest,
    QueueTarget,
    ThreadView,
    VoteCast,
    utcnow,
)
from league_assembly.config import AssemblySettings, settings
from league_assembly.errors import AssemblyError, UnauthorizedError, ValidationError
from league_assembly.governance.access import AccessGuard
from league_assembly.governance.amendments import AmendmentManager
from league_assembly.governance.chair import ChairDesk
from league_assembly.governance.discussions import DiscussionBoard
from league_assembly.governance.motions import MotionManager
from league_assembly.governance.resolution import ResolutionEngine
from league_assembly.session.hub import SessionHub
from league_assembly.session.presence import PresenceRegistry
from league_assembly.store.database import Database

logger = logging.getLogger(__name__)

_emergency_adapter: TypeAdapter[Any] = TypeAdapter(EmergencyAction)


class AppState:
    """Services shared by every request, built once per process."""

    def __init__(self, config: AssemblySettings = settings) -> None:
        self.config = config
        self.database: Database | None = None
        self.resolution: ResolutionEngine | None = None
        self.amendments: AmendmentManager | None = None
        self.motions: MotionManager | None = None
        self.chair: ChairDesk | None = None
        self.discussions: DiscussionBoard | None = None
        self.hub: SessionHub | None = None
        self.startup_time: datetime = utcnow()

    def build(self, database: Database | None = None) -> "AppState":
        """Wire every service from ``config``. Safe to call once per state."""
        config = self.config
        self.database = database or Database(config.database_url_sync)
        self.database.initialize()

        guard = AccessGuard(
            minimum_quorum=config.motion_quorum_minimum,
            quorum_fraction=config.motion_quorum_fraction,
            chair_slug=config.chair_slug,
        )
        self.resolution = ResolutionEngine(self.database)
        self.amendments = AmendmentManager(
            self.database,
            guard,
            self.resolution,
            voting_hours=config.amendment_voting_hours,
            threshold=config.amendment_threshold,
            quorum=config.amendment_quorum,
            default_treaty_slug=config.default_treaty_slug,
        )
        self.motions = MotionManager(self.database, guard)
        self.chair = ChairDesk(self.database, guard)
        self.discussions = DiscussionBoard(self.database, guard)
        self.hub = SessionHub(PresenceRegistry(
            default_room=config.presence_default_room,
            heartbeat_interval=config.presence_heartbeat_interval_seconds,
            heartbeat_timeout=config.presence_heartbeat_timeout_seconds,
            quorum_minimum=config.presence_quorum_minimum,
        ))
        return self


async def _sweep_periodically(engine: ResolutionEngine, interval: float) -> None:
    """Background expiry sweep. A failed pass is logged and the loop carries on."""
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(engine.close_expired_amendments)
        except Exception:
            logger.exception("Expiry sweep pass failed")


def _json(value: Any, status_code: int = 200) -> JSONResponse:
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True)
    return JSONResponse(value, status_code=status_code)


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


def create_app(app_state: AppState | None = None) -> FastAPI:
    """
    Build the FastAPI application around ``app_state``.

    When the state has no database yet, the lifespan builds all services from
    configuration on startup.
    """
    assembly = app_state or AppState()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if assembly.database is None:
            assembly.build()
        logger.info("League Assembly API starting")

        sweeper: asyncio.Task | None = None
        interval = assembly.config.expiry_sweep_interval_seconds
        if interval > 0 and assembly.database.is_in_memory:
            logger.info("Background expiry sweep disabled for in-memory database")
        elif interval > 0:
            sweeper = asyncio.create_task(_sweep_periodically(assembly.resolution, interval))
        app.state.sweeper = sweeper

        yield

        if sweeper is not None:
            sweeper.cancel()
        app.state.sweeper = None
        logger.info("League Assembly API shut down")

    app = FastAPI(
        title="League Assembly",
        description="Deliberative portal for treaty amendments, motions and live debate",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.assembly = assembly

    # ── Error handling ─────────────────────────────────────────

    @app.exception_handler(AssemblyError)
    async def assembly_error(request: Request, exc: AssemblyError):
        return JSONResponse(exc.to_payload(), status_code=exc.status)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        fields = {
            ".".join(str(part) for part in err["loc"] if part != "body"): err["msg"]
            for err in exc.errors()
        }
        return JSONResponse(
            ValidationError("Invalid request", fields=fields).to_payload(), status_code=400
        )

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    # ── Dependencies ───────────────────────────────────────────

    def get_state(request: Request) -> AppState:
        return request.app.state.assembly

    def identity(request: Request) -> str:
        """The opaque acting-country credential set by the auth layer."""
        country_id = request.headers.get(assembly.config.identity_header, "").strip()
        if not country_id:
            raise UnauthorizedError()
        return country_id

    # ── Routes: Amendments ─────────────────────────────────────

    @app.post("/api/amendments")
    def create_amendment(
        req: AmendmentCreate,
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        amendment = state.amendments.create(country_id, req)
        return _json({"amendment": _dump(amendment)}, status_code=201)

    @app.get("/api/amendments/{slug}")
    def get_amendment(slug: str, state: AppState = Depends(get_state)):
        return _json({"amendment": _dump(state.amendments.get_amendment(slug))})

    @app.post("/api/amendments/{slug}/vote")
    def vote_amendment(
        slug: str,
        req: VoteCast,
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        return _json(state.amendments.cast_vote(slug, country_id, req))

    @app.post("/api/amendments/{slug}/close")
    def close_amendment(
        slug: str,
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        return _json(state.amendments.close(slug, country_id))

    @app.post("/api/amendments/{slug}/apply")
    def apply_amendment(
        slug: str,
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        return _json({"amendment": _dump(state.amendments.apply(slug, country_id))})

    @app.post("/api/amendments/{slug}/discussions")
    def open_discussion(
        slug: str,
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        thread, created = state.discussions.open_thread(slug, country_id)
        return _json({"thread": _dump(thread), "created": created}, status_code=201 if created else 200)

    @app.post("/api/cron/close-expired-amendments")
    def close_expired_amendments(state: AppState = Depends(get_state)):
        finalized = state.resolution.close_expired_amendments()
        return _json({"closed": len(finalized), "amendments": [_dump(f) for f in finalized]})

    # ── Routes: Motions ────────────────────────────────────────

    @app.post("/api/motions")
    def create_motion(
        req: MotionCreate,
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        return _json({"motion": _dump(state.motions.create(country_id, req))}, status_code=201)

    @app.post("/api/motions/{motion_id}/second")
    def second_motion(
        motion_id: str,
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        return _json({"motion": _dump(state.motions.second(motion_id, country_id))})

    @app.post("/api/motions/{motion_id}/vote")
    def vote_motion(
        motion_id: str,
        req: ModVoteCast,
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        return _json(state.motions.vote(motion_id, country_id, req))

    @app.post("/api/motions/{motion_id}/withdraw")
    def withdraw_motion(
        motion_id: str,
        req: MotionNote | None = None,
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        note = req.note if req is not None else None
        return _json({"motion": _dump(state.motions.withdraw(motion_id, country_id, note))})

    # ── Routes: Chair ──────────────────────────────────────────

    @app.post("/api/chair/rule")
    def chair_rule(
        req: ChairRuling,
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        return _json({"motion": _dump(state.motions.chair_rule(country_id, req))})

    @app.post("/api/chair/emergency")
    def chair_emergency(
        payload: dict[str, Any] = Body(...),
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        try:
            action = _emergency_adapter.validate_python(payload)
        except PayloadError as exc:
            fields = {".".join(str(p) for p in err["loc"]): err["msg"] for err in exc.errors()}
            raise ValidationError("Invalid emergency action", fields=fields) from exc

        target = state.chair.emergency(country_id, action)
        key = "thread" if isinstance(target, ThreadView) else "post"
        return _json({key: _dump(target)})

    @app.get("/api/chair/log")
    def chair_log(limit: int = 50, state: AppState = Depends(get_state)):
        return _json({"actions": [_dump(entry) for entry in state.chair.list_actions(limit)]})

    # ── Routes: Discussions ────────────────────────────────────

    @app.get("/api/discussions/{thread_id}/posts")
    def list_posts(thread_id: str, state: AppState = Depends(get_state)):
        return _json({"posts": [_dump(post) for post in state.discussions.list_posts(thread_id)]})

    @app.post("/api/discussions/{thread_id}/posts")
    def create_post(
        thread_id: str,
        req: PostCreate,
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        post = state.discussions.create_post(thread_id, country_id, req)
        return _json({"post": _dump(post)}, status_code=201)

    @app.patch("/api/discussions/{thread_id}/posts/{post_id}")
    def edit_post(
        thread_id: str,
        post_id: str,
        req: PostUpdate,
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        return _json({"post": _dump(state.discussions.edit_post(thread_id, post_id, country_id, req))})

    @app.delete("/api/discussions/{thread_id}/posts/{post_id}")
    def delete_post(
        thread_id: str,
        post_id: str,
        country_id: str = Depends(identity),
        state: AppState = Depends(get_state),
    ):
        return _json({"post": _dump(state.discussions.delete_post(thread_id, post_id, country_id))})

    # ── Routes: Speaker queue & presence ───────────────────────

    @app.post("/api/queue/request")
    async def queue_request(req: QueueRequest, state: AppState = Depends(get_state)):
        snapshot = await state.hub.queue_request(req.thread_id, req.country_id)
        return _json({"queue": snapshot.model_dump(by_alias=True)})

    @app.post("/api/queue/recognize")
    async def queue_recognize(req: QueueTarget, state: AppState = Depends(get_state)):
        snapshot = await state.hub.queue_recognize(req.thread_id, req.country_id)
        return _json({"queue": snapshot.model_dump(by_alias=True)})

    @app.post("/api/queue/skip")
    async def queue_skip(req: QueueTarget, state: AppState = Depends(get_state)):
        snapshot = await state.hub.queue_skip(req.thread_id, req.country_id)
        return _json({"queue": snapshot.model_dump(by_alias=True)})

    @app.get("/api/queue/{thread_id}")
    async def queue_read(thread_id: str, state: AppState = Depends(get_state)):
        return _json({"queue": state.hub.queue_snapshot(thread_id).model_dump(by_alias=True)})

    @app.get("/api/presence/{room_id}")
    async def presence_read(room_id: str, state: AppState = Depends(get_state)):
        return _json(state.hub.presence_snapshot(room_id))

    @app.websocket("/api/socket")
    async def session_socket(ws: WebSocket, room: str | None = None):
        """Live channel: presence heartbeats and speaker-queue commands."""
        hub: SessionHub = ws.app.state.assembly.hub
        await ws.accept()
        connection = await hub.open(ws, room)
        try:
            while True:
                raw = await ws.receive_text()
                await hub.handle_message(connection, raw)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.warning("Socket %s failed", connection.connection_id, exc_info=True)
        finally:
            await hub.close(connection)

    # ── Health Check ───────────────────────────────────────────

    @app.get("/health")
    async def health(state: AppState = Depends(get_state)):
        return _json({
            "status": "healthy",
            "uptime_seconds": (utcnow() - state.startup_time).total_seconds(),
            "database_available": state.database is not None,
            "rooms": len(state.hub.presence.rooms) if state.hub else 0,
        })

    return app


app = create_app()
