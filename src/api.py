from fastapi import FastAPI, HTTPException, Query, Response, Request, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import time
from typing import Optional
from pydantic import BaseModel, field_validator

from config import settings, VERSION
from session_store import create_session_store
from session_tracker import SessionTracker
from access_limiter import AccessLimiter
from relay_fetcher import RelayFetcher
from playlist_registry import PlaylistRegistry, validate_url, validate_max_devices, mirror_path
from proxy_endpoint import ProxyEndpoint, build_client_identity
from playlist_format import NO_CACHE_HEADERS, internal_error_playlist, get_content_type
from models import DeviceCategory
from errors import AllocationExhausted

# Set up logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


# Request models
class PlaylistCreateRequest(BaseModel):
    name: str
    origin_url: str
    max_devices: Optional[int] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("name cannot be empty")
        return v.strip()

    @field_validator('origin_url')
    @classmethod
    def validate_origin_url(cls, v):
        return validate_url(v)

    @field_validator('max_devices')
    @classmethod
    def validate_device_cap(cls, v):
        if v is not None:
            return validate_max_devices(v)
        return v


# Global components
session_store = create_session_store()
session_tracker = SessionTracker(session_store)
access_limiter = AccessLimiter(session_tracker)
relay_fetcher = RelayFetcher()
playlist_registry = PlaylistRegistry(session_store)
proxy_endpoint = ProxyEndpoint(
    playlist_registry, access_limiter, relay_fetcher, store=session_store)
started_at = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    logger.info("⚡️ m3u mirror starting up...")
    await session_store.start()
    if settings.SESSION_SWEEP_ENABLED:
        await session_tracker.start()

    yield

    # Shutdown
    logger.info("m3u mirror shutting down...")
    await session_tracker.stop()
    await relay_fetcher.close()
    await session_store.close()


app = FastAPI(
    title="m3u mirror",
    version=VERSION,
    description="Playlist mirror with per-playlist device limits and origin relay",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
    docs_url=settings.DOCS_URL,
    redoc_url=settings.REDOC_URL,
    openapi_url=settings.OPENAPI_URL,
)

# Configure CORS to allow all origins for player compatibility
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


def get_client_info(request: Request):
    """Extract the client identity used as the device session key"""
    return build_client_identity(
        remote_host=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        forwarded_for=request.headers.get("x-forwarded-for"),
        accept_language=request.headers.get("accept-language"),
    )


async def verify_token(
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)")
):
    """
    Verify API token if API_TOKEN is configured.
    Token can be provided via:
    - X-API-Token header (recommended)
    - api_token query parameter (for browser access or when headers are difficult)

    If API_TOKEN is not set in environment, authentication is disabled.
    """
    if not settings.API_TOKEN:
        return True

    provided_token = x_api_token or api_token

    if not provided_token:
        raise HTTPException(
            status_code=401,
            detail="API token required. Provide token via X-API-Token header or api_token query parameter.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if provided_token != settings.API_TOKEN:
        raise HTTPException(
            status_code=403,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


@app.get("/")
async def root():
    return {
        "status": "running",
        "message": "m3u mirror is running",
        "version": VERSION,
        "uptime": time.time() - started_at,
    }


@app.get("/health")
async def health_check():
    """Health check endpoint with storage status"""
    store_ok = await session_store.ping()
    return {
        "status": "healthy" if store_ok else "degraded",
        "version": VERSION,
        "root_path": settings.ROOT_PATH,
        "storage_backend": session_store.backend_name,
        "storage_ok": store_ok,
        "session_ttl_seconds": session_tracker.ttl,
        "uptime_seconds": time.time() - started_at,
    }


@app.get(f"/{settings.ROUTE_PREFIX.strip('/')}/{{mirror_name}}")
async def get_mirror_playlist(mirror_name: str, request: Request):
    """Serve a registered playlist through the device limiter"""
    client = get_client_info(request)
    try:
        result = await proxy_endpoint.handle(mirror_name, client)
    except Exception as e:
        logger.exception(f"Unexpected error serving mirror {mirror_name}: {e}")
        headers = dict(NO_CACHE_HEADERS)
        return Response(
            content=internal_error_playlist(),
            status_code=500,
            media_type=get_content_type(None),
            headers=headers,
        )

    response = Response(
        content=result.content,
        status_code=result.status_code,
        media_type=result.content_type,
        headers=result.headers,
    )
    response.headers["X-Device-Category"] = result.category.value
    return response


@app.post("/playlists", dependencies=[Depends(verify_token)], status_code=201)
async def register_playlist(request: PlaylistCreateRequest):
    """Register an origin playlist and issue its mirror identifier"""
    try:
        playlist = await playlist_registry.register(
            request.name, request.origin_url, request.max_devices)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AllocationExhausted as e:
        logger.error(f"Playlist registration failed: {e}")
        raise HTTPException(
            status_code=503, detail="Could not allocate a mirror identifier")

    return {
        **playlist.to_dict(),
        "mirror_url": mirror_path(playlist.identifier),
    }


async def _require_playlist(identifier: str):
    playlist = await playlist_registry.get(identifier)
    if playlist is None:
        raise HTTPException(status_code=404, detail="Playlist not found")
    return playlist


@app.get("/playlists/{identifier}", dependencies=[Depends(verify_token)])
async def get_playlist(identifier: str):
    playlist = await _require_playlist(identifier)
    return {
        **playlist.to_dict(),
        "mirror_url": mirror_path(playlist.identifier),
        "active_devices": await session_tracker.active_count(playlist),
    }


@app.get("/playlists/{identifier}/devices", dependencies=[Depends(verify_token)])
async def get_playlist_devices(identifier: str):
    """Active devices (same window as admission) and recent access statistics"""
    playlist = await _require_playlist(identifier)
    active_sessions = await session_tracker.active_sessions(playlist)
    breakdown = {category.value: 0 for category in DeviceCategory}
    for session in active_sessions:
        breakdown[session.category.value] += 1

    recent = {category.value: 0 for category in DeviceCategory}
    rejected = 0
    events = await session_store.list_access_events_since(
        playlist.identifier, time.time() - settings.REPORT_WINDOW)
    for event in events:
        recent[event.category.value] += 1
        if not event.admitted:
            rejected += 1

    return {
        "identifier": playlist.identifier,
        "name": playlist.name,
        "max_devices": playlist.max_devices,
        "active_devices": len(active_sessions),
        "session_ttl_seconds": session_tracker.ttl,
        "devices": breakdown,
        "sessions": [
            {
                "client": session.client_key,
                "category": session.category.value,
                "user_agent": session.user_agent,
                "first_seen": session.first_seen,
                "last_heartbeat": session.last_heartbeat,
            }
            for session in active_sessions
        ],
        "recent_access": {
            "window_seconds": settings.REPORT_WINDOW,
            "total": len(events),
            "rejected": rejected,
            "by_category": recent,
        },
    }
