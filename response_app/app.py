import asyncio
import json
import logging
import random
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

# --- relative imports (package-local) ---
from .auth import Principal, authenticate, authorize, ensure_owner_or_admin
from .broadcast import Broadcaster, Subscription
from .cache import TTLCache, SqliteTTLCache
from .config import Settings, configure_logging
from .errors import ResponseError, InvalidInput
from .gateway import UpstreamGateway
from .geo import GeoIndex
from .models import GeoPoint, WSMsg
from .providers import MockProviders
from .storage import RecordStore

logger = logging.getLogger(__name__)


# =========================
# Helpers / Models (local)
# =========================

def _json_default(o):
    if isinstance(o, datetime):
        return o.isoformat()
    raise TypeError(f"Type not serializable: {type(o)}")


class DisasterIn(BaseModel):
    title: Optional[str] = None
    location_name: Optional[str] = None
    description: Optional[str] = ""
    tags: Optional[List[str]] = None


class DisasterPatch(BaseModel):
    title: Optional[str] = None
    location_name: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None


class GeocodeIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    disaster_id: Optional[str] = Field(default=None, alias="disasterId")
    description: Optional[str] = None


class ReportIn(BaseModel):
    content: Optional[str] = None
    image_url: Optional[str] = None


class VerifyIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    image_url: Optional[str] = Field(default=None, alias="imageUrl")


class ResourceIn(BaseModel):
    name: Optional[str] = None
    location_name: Optional[str] = None
    type: Optional[str] = None


def _store(request: Request) -> RecordStore:
    return request.app.state.store

def _gateway(request: Request) -> UpstreamGateway:
    return request.app.state.gateway


# =========================
# Lifecycle
# =========================

async def _build_cache(settings: Settings):
    if settings.cache_backend == "sqlite":
        return await SqliteTTLCache(settings.cache_db_path, default_ttl=settings.cache_ttl_secs).open()
    return TTLCache(default_ttl=settings.cache_ttl_secs)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cache = await _build_cache(settings)
        providers = MockProviders(
            latency_scale=settings.provider_latency_scale,
            rate_limit_chance=settings.social_rate_limit_chance,
            rng=random.Random(settings.social_random_seed),
        )
        gateway = UpstreamGateway(cache, providers, ttl=settings.cache_ttl_secs,
                                  timeout=settings.provider_timeout_secs)
        broadcaster = Broadcaster(max_pending=settings.ws_max_pending)
        store = await RecordStore(settings.db_path, gateway=gateway, index=GeoIndex(),
                                  broadcaster=broadcaster).open()
        app.state.settings = settings
        app.state.cache = cache
        app.state.gateway = gateway
        app.state.broadcaster = broadcaster
        app.state.store = store
        logger.info(f"[App] ready db={settings.db_path} cache={settings.cache_backend}")
        try:
            yield
        finally:
            await broadcaster.close()
            await store.close()
            await gateway.close()
            await cache.close()
            logger.info("[App] shut down")

    app = FastAPI(title="Disaster Response Coordinator", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ResponseError)
    async def _response_error(request: Request, exc: ResponseError):
        if exc.status_code >= 500:
            logger.error(f"[App][ERROR] {request.method} {request.url.path}: {exc.message}")
        else:
            logger.warning(f"[App] {request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"message": "Invalid request.", "errors": jsonable_encoder(exc.errors())})

    _register_routes(app)
    return app


# =========================
# Routes
# =========================

def _register_routes(app: FastAPI) -> None:

    @app.get("/")
    async def root():
        return {"message": "Disaster Response Backend API is running!"}

    @app.get("/api/health")
    async def health(request: Request):
        return {"status": "ok", "observers": len(request.app.state.broadcaster)}

    @app.get("/api/auth/me")
    async def whoami(user: Principal = Depends(authenticate)):
        logger.info(f"[Auth] user details requested for {user.id}")
        return {"message": "Authenticated successfully (mock)", "user": user.model_dump()}

    # ---- disasters ----

    @app.post("/api/disasters", status_code=201)
    async def create_disaster(body: DisasterIn, request: Request, user: Principal = Depends(authenticate)):
        authorize(user, "admin", "contributor")
        d = await _store(request).create_disaster(
            user.id, body.title, body.location_name, body.tags, description=body.description or "")
        return d.model_dump(mode="json")

    @app.get("/api/disasters")
    async def list_disasters(request: Request, tag: Optional[str] = None):
        return [d.model_dump(mode="json") for d in await _store(request).list_disasters(tag)]

    @app.get("/api/disasters/{disaster_id}")
    async def get_disaster(disaster_id: str, request: Request):
        return (await _store(request).get_disaster(disaster_id)).model_dump(mode="json")

    @app.put("/api/disasters/{disaster_id}")
    async def update_disaster(disaster_id: str, body: DisasterPatch, request: Request,
                              user: Principal = Depends(authenticate)):
        authorize(user, "admin", "contributor")
        store = _store(request)
        ensure_owner_or_admin(user, (await store.get_disaster(disaster_id)).owner_id)
        d = await store.update_disaster(disaster_id, user.id, **body.model_dump(exclude_none=True))
        return d.model_dump(mode="json")

    @app.delete("/api/disasters/{disaster_id}")
    async def delete_disaster(disaster_id: str, request: Request, user: Principal = Depends(authenticate)):
        authorize(user, "admin", "contributor")
        store = _store(request)
        ensure_owner_or_admin(user, (await store.get_disaster(disaster_id)).owner_id)
        summary = await store.delete_disaster(disaster_id, user.id)
        return {"message": "Disaster deleted successfully.", **summary}

    @app.post("/api/geocode")
    async def geocode_disaster(body: GeocodeIn, request: Request, user: Principal = Depends(authenticate)):
        authorize(user, "admin", "contributor")
        if not body.disaster_id:
            raise InvalidInput("Missing required fields: disasterId and description.")
        d = await _store(request).locate_disaster(body.disaster_id, user.id, body.description)
        return d.model_dump(mode="json")

    # ---- reports ----

    @app.post("/api/disasters/{disaster_id}/reports", status_code=201)
    async def create_report(disaster_id: str, body: ReportIn, request: Request,
                            user: Principal = Depends(authenticate)):
        authorize(user, "citizen", "contributor")
        r = await _store(request).create_report(disaster_id, user.id, body.content, body.image_url)
        return r.model_dump(mode="json")

    @app.get("/api/disasters/{disaster_id}/reports")
    async def list_reports(disaster_id: str, request: Request):
        return [r.model_dump(mode="json") for r in await _store(request).list_reports(disaster_id)]

    @app.post("/api/disasters/{disaster_id}/reports/{report_id}/verify-image")
    async def verify_report_image(disaster_id: str, report_id: str, request: Request,
                                  body: Optional[VerifyIn] = None,
                                  user: Principal = Depends(authenticate)):
        authorize(user, "admin", "contributor")
        outcome = await _store(request).update_report_verification(
            disaster_id, report_id, user.id, image_url=body.image_url if body else None)
        return {**outcome.report.model_dump(mode="json"),
                "verification_message": outcome.message, "changed": outcome.changed}

    # ---- resources ----

    @app.post("/api/disasters/{disaster_id}/resources", status_code=201)
    async def create_resource(disaster_id: str, body: ResourceIn, request: Request,
                              user: Principal = Depends(authenticate)):
        authorize(user, "admin", "contributor")
        r = await _store(request).create_resource(
            disaster_id, user.id, body.name, body.location_name, body.type)
        return r.model_dump(mode="json")

    @app.get("/api/disasters/{disaster_id}/resources")
    async def list_resources(disaster_id: str, request: Request, lat: Optional[float] = None,
                             lon: Optional[float] = None, radius: float = 10000, type: Optional[str] = None):
        store = _store(request)
        if lat is None and lon is None:
            return [r.model_dump(mode="json") for r in await store.list_resources(disaster_id, type)]
        if lat is None or lon is None:
            raise InvalidInput("Both lat and lon are required for a proximity search.")
        try:
            center = GeoPoint(lon=lon, lat=lat)
        except ValueError:
            raise InvalidInput("Invalid latitude, longitude, or radius provided.")
        hits = await store.nearby_resources(disaster_id, center, radius, type)
        return [{**h.resource.model_dump(mode="json"), "distance_m": round(h.distance_m, 2)} for h in hits]

    @app.delete("/api/disasters/{disaster_id}/resources/{resource_id}")
    async def delete_resource(disaster_id: str, resource_id: str, request: Request,
                              user: Principal = Depends(authenticate)):
        authorize(user, "admin", "contributor")
        r = await _store(request).delete_resource(disaster_id, resource_id, user.id)
        return {"message": "Resource deleted successfully.", "resource": r.model_dump(mode="json")}

    # ---- provider-backed reads ----

    @app.get("/api/disasters/{disaster_id}/social-media")
    async def social_media(disaster_id: str, request: Request, query: str = ""):
        result = await _gateway(request).search_social(disaster_id, query)
        posts = result.unwrap() or []
        logger.info(f"[Social] {len(posts)} post(s) for disaster {disaster_id} query={query!r} ({result.status})")
        return posts

    @app.get("/api/disasters/{disaster_id}/official-updates")
    async def official_updates(disaster_id: str, request: Request, source: Optional[str] = None):
        gateway = _gateway(request)
        result = await (gateway.fetch_bulletins(source) if source else gateway.fetch_all_bulletins())
        updates = result.unwrap() or []
        logger.info(f"[Bulletins] {len(updates)} update(s) for disaster {disaster_id} source={source or 'all'}")
        return updates

    # ---- realtime ----

    @app.websocket("/ws")
    async def ws_endpoint(ws: WebSocket):
        await ws.accept()
        broadcaster: Broadcaster = ws.app.state.broadcaster
        sub = broadcaster.subscribe()
        rooms: Set[str] = set()
        relay = asyncio.create_task(_relay(ws, sub, rooms))
        try:
            while True:
                raw = await ws.receive_text()
                ack = _handle_client_message(raw, rooms, sub)
                if ack is not None:
                    await ws.send_text(json.dumps(ack.model_dump()))
        except (WebSocketDisconnect, RuntimeError):
            pass
        finally:
            broadcaster.unsubscribe(sub)
            relay.cancel()
            await asyncio.gather(relay, return_exceptions=True)
            logger.info(f"[WS] client {sub.id} disconnected")


def _handle_client_message(raw: str, rooms: Set[str], sub: Subscription) -> Optional[WSMsg]:
    """Apply a room change; returns the acknowledgement to send back, if any."""
    try:
        msg: Dict[str, Any] = json.loads(raw)
    except ValueError:
        return None  # ignore non-JSON client chatter
    if not isinstance(msg, dict) or not msg.get("room"):
        return None
    room = str(msg["room"])
    if msg.get("type") == "join_room":
        rooms.add(room)
        logger.info(f"[WS] client {sub.id} joined room {room}")
        return WSMsg(type="room.joined", data={"room": room, "rooms": sorted(rooms)})
    if msg.get("type") == "leave_room":
        rooms.discard(room)
        logger.info(f"[WS] client {sub.id} left room {room}")
        return WSMsg(type="room.left", data={"room": room, "rooms": sorted(rooms)})
    return None


async def _relay(ws: WebSocket, sub: Subscription, rooms: Set[str]) -> None:
    try:
        async for event in sub:
            if rooms and event.disaster_id not in rooms:
                continue
            msg = WSMsg(type=event.type, data=event.payload)
            await ws.send_text(json.dumps(msg.model_dump(), default=_json_default))
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"[WS][ERROR] send failed for client {sub.id}: {e}")
        return
    if sub.overflowed:
        await ws.close(code=1013)


app = create_app()
