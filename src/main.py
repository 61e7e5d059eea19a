# src/main.py
"""
Standup Sessions API

Session identity and access control for team standups: create and join
sessions, email verification, and the access check a client runs before
rendering a session room.
"""

from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Dict, Any, Optional
from contextlib import asynccontextmanager
from datetime import datetime
import asyncio
import logging
import os

from src.core.access_guard import AccessGuard, LocalSessionCache
from src.core.config import settings, validate_required_settings
from src.core.exceptions import AuthenticationError, StandupError, StorageError
from src.core.logging_config import setup_logging
from src.core.rate_limit_config import get_real_ip, get_rate_limit_message
from src.core.rate_limiter import RateLimiter, InMemoryRateLimitBackend, RedisRateLimitBackend
from src.core.security import EmailTokenService, EmailCipher, VerificationCodeService
from src.middleware.security_middleware import SecurityMiddleware, RateLimitMonitor
from src.services.redis_service import RedisService, create_redis_service
from src.services.session_service import StandupSessionService
from src.services.session_store import SessionStore, InMemorySessionBackend, RedisSessionBackend

API_VERSION = "1.0.0"


def build_services(redis_service: Optional[RedisService] = None) -> Dict[str, Any]:
    """
    Wire the session services onto Redis when a URL is configured, otherwise
    onto in-process stores (single instance only).

    A configured but unreachable Redis still gets the Redis backends, so
    requests fail with StorageError instead of splitting state per instance.
    """
    if redis_service is not None and redis_service.config.url:
        session_backend = RedisSessionBackend(redis_service)
        rate_backend = RedisRateLimitBackend(redis_service)
        storage = "redis"
    else:
        session_backend = InMemorySessionBackend()
        rate_backend = InMemoryRateLimitBackend()
        storage = "memory"

    rate_limiter = RateLimiter(backend=rate_backend)
    token_service = EmailTokenService()
    store = SessionStore(backend=session_backend)
    code_service = VerificationCodeService(
        backend=session_backend,
        rate_limiter=rate_limiter,
        token_service=token_service
    )

    return {
        "storage": storage,
        "rate_limiter": rate_limiter,
        "session_store": store,
        "session_service": StandupSessionService(
            store=store,
            rate_limiter=rate_limiter,
            token_service=token_service,
            code_service=code_service,
            email_cipher=EmailCipher()
        ),
        "access_guard": AccessGuard(store),
    }


def install_services(target_app: FastAPI, services: Dict[str, Any]) -> None:
    for name, service in services.items():
        setattr(target_app.state, name, service)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan event handler for startup/shutdown"""
    logger.info("=" * 60)
    logger.info("🚀 Standup Sessions API starting...")
    logger.info("=" * 60)

    # Validate environment variables (warn but don't fail)
    if not validate_required_settings():
        logger.warning("⚠️ Some environment variables are missing - email verification will fail")

    redis_service = await create_redis_service()

    services = build_services(redis_service)
    install_services(app, services)
    app.state.redis_service = redis_service

    logger.info("📋 Configuration:")
    logger.info(f"  - Storage: {services['storage']}")
    logger.info(f"  - Session TTL: {settings.SESSION_TTL_SECONDS}s ({settings.SESSION_TTL_POLICY})")
    logger.info(f"  - Max participants: {settings.MAX_PARTICIPANTS}")
    if services["storage"] == "memory":
        logger.warning("⚠️ In-memory storage: sessions are lost on restart and not shared between instances")

    sweep_task = asyncio.create_task(services["rate_limiter"].run_periodic_sweep())

    logger.info("=" * 60)
    logger.info("✅ API ready!")
    logger.info("=" * 60)

    yield

    logger.info("🛑 Standup Sessions API shutting down...")
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass
    await redis_service.shutdown()
    logger.info("👋 Goodbye!")


# Initialize FastAPI app with lifespan
app = FastAPI(
    title="Standup Sessions API",
    description="Session identity and access control for team standups",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None
)

# Setup logging
logger = setup_logging()

# =============================================================================
# RATE LIMITING
# =============================================================================

# Coarse per-IP limit in front of every /api route; per-action quotas live in RateLimiter
limiter = Limiter(key_func=get_real_ip)
app.state.limiter = limiter

rate_limit_monitor = RateLimitMonitor()


def global_rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Global limit response in the same shape as every other error"""
    rate_limit_monitor.record_violation(get_real_ip(request))
    response = JSONResponse(
        status_code=429,
        content={"error": get_rate_limit_message("default"), "code": "RATE_LIMITED"},
    )
    response.headers["Retry-After"] = "60"
    return response


app.add_exception_handler(RateLimitExceeded, global_rate_limit_handler)

# =============================================================================
# ERROR HANDLING
# =============================================================================


@app.exception_handler(StandupError)
async def standup_error_handler(request: Request, exc: StandupError):
    """Translate service errors into ``{error, code, ...}`` without internals"""
    if isinstance(exc, StorageError):
        logger.error(f"💥 Storage failure on {request.url.path}: {exc}")
    elif exc.status_code >= 500:
        logger.error(f"💥 {type(exc).__name__} on {request.url.path}: {exc}")
    else:
        logger.info(f"↩️ {exc.status_code} {exc.code} on {request.url.path}")

    if exc.status_code == 429:
        rate_limit_monitor.record_violation(get_real_ip(request), exc.details.get("action", "unknown"))

    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.info(f"↩️ 400 malformed body on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "code": "INVALID_REQUEST"},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.url.path}: {type(exc).__name__}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
    )

# =============================================================================
# MIDDLEWARE
# =============================================================================


HEALTH_PATHS = {"/", "/health", "/healthz"}


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests for debugging"""
    path = request.url.path

    if path in HEALTH_PATHS:
        if not getattr(app.state, "health_logged", False):
            logger.info(f"✅ Health check endpoint hit: {path}")
            app.state.health_logged = True
    else:
        logger.info(f"📥 Request: {request.method} {path}")

    return await call_next(request)


app.middleware("http")(SecurityMiddleware())

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# =============================================================================
# DEPENDENCIES & MODELS
# =============================================================================

bearer_scheme = HTTPBearer(auto_error=False)


def get_session_service(request: Request) -> StandupSessionService:
    return request.app.state.session_service


def get_access_guard(request: Request) -> AccessGuard:
    return request.app.state.access_guard


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateSessionRequest(ApiModel):
    leader_name: Optional[str] = None
    password: Optional[str] = None
    email_token: Optional[str] = None


class JoinSessionRequest(ApiModel):
    session_id: Optional[str] = None
    participant_name: Optional[str] = None
    password: Optional[str] = None
    email_token: Optional[str] = None


class SendCodeRequest(ApiModel):
    email: Optional[str] = None


class VerifyEmailRequest(ApiModel):
    email: Optional[str] = None
    code: Optional[str] = None


class SaveTranscriptRequest(ApiModel):
    session_id: Optional[str] = None
    transcript: Optional[Dict[str, Any]] = None


class FinishSessionRequest(ApiModel):
    session_id: Optional[str] = None
    summary: Optional[str] = None


class LeaveSessionRequest(ApiModel):
    session_id: Optional[str] = None
    user_id: Optional[str] = None


class CachedIdentity(ApiModel):
    """What the client holds locally; untrusted"""
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None

    def to_cache(self) -> LocalSessionCache:
        return LocalSessionCache(self.session_id, self.user_id, self.user_name)


class LandingRequest(ApiModel):
    query: Dict[str, str] = {}
    cache: CachedIdentity = CachedIdentity()

# =============================================================================
# HEALTH
# =============================================================================


@app.get("/", status_code=200)
def read_root():
    """Health check endpoint"""
    return {"status": "ok", "version": API_VERSION, "service": "standup-sessions"}


@app.get("/health", status_code=200)
def health():
    """Alternative health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


@app.head("/", status_code=200)
def head_root():
    """HEAD request support for health checks"""
    return None


@app.get("/healthz", response_class=PlainTextResponse, status_code=200)
def healthz():
    """Plain text health check for maximum compatibility"""
    return "OK"


@app.get("/api/health")
async def api_health(request: Request):
    """Storage status and aggregate rate limit violation counts"""
    redis_service = getattr(request.app.state, "redis_service", None)
    redis_health = await redis_service.health_check() if redis_service else {
        "healthy": True,
        "status": "disabled",
    }
    return {
        "status": "healthy" if redis_health["healthy"] else "degraded",
        "storage": getattr(request.app.state, "storage", "unknown"),
        "redis": {"status": redis_health["status"]},
        "rateLimitViolations": rate_limit_monitor.get_violation_stats(),
        "timestamp": datetime.now().isoformat(),
    }

# =============================================================================
# SESSIONS
# =============================================================================


@app.post("/api/create-session", status_code=201)
@limiter.limit(settings.GLOBAL_RATE_LIMIT)
async def create_session(
    request: Request,
    req: CreateSessionRequest,
    service: StandupSessionService = Depends(get_session_service)
):
    """Create a session; the caller becomes its leader and first participant"""
    result = await service.create_session(
        req.leader_name,
        password=req.password,
        client_id=get_real_ip(request),
        email_token=req.email_token
    )
    return {**result, "message": "Session created successfully"}


@app.post("/api/join-session")
@limiter.limit(settings.GLOBAL_RATE_LIMIT)
async def join_session(
    request: Request,
    req: JoinSessionRequest,
    service: StandupSessionService = Depends(get_session_service)
):
    """Join an existing session, proving the password if it has one"""
    result = await service.join_session(
        req.session_id,
        req.participant_name,
        password=req.password,
        client_id=get_real_ip(request),
        email_token=req.email_token
    )
    return {**result, "message": "Successfully joined session"}


@app.get("/api/get-session/{session_id}")
@limiter.limit(settings.GLOBAL_RATE_LIMIT)
async def get_session(
    request: Request,
    session_id: str,
    service: StandupSessionService = Depends(get_session_service)
):
    view = await service.get_session(session_id)
    return view.model_dump(by_alias=True)


@app.post("/api/save-transcript")
@limiter.limit(settings.GLOBAL_RATE_LIMIT)
async def save_transcript(
    request: Request,
    req: SaveTranscriptRequest,
    service: StandupSessionService = Depends(get_session_service)
):
    updated = await service.add_transcript(req.session_id, req.transcript, client_id=get_real_ip(request))
    return {
        "success": True,
        "message": "Transcript saved successfully",
        "transcriptCount": len(updated.transcripts),
    }


@app.post("/api/finish-session")
@limiter.limit(settings.GLOBAL_RATE_LIMIT)
async def finish_session(
    request: Request,
    req: FinishSessionRequest,
    service: StandupSessionService = Depends(get_session_service)
):
    result = await service.finish_session(req.session_id, req.summary, client_id=get_real_ip(request))
    return {**result, "success": True}


@app.post("/api/leave-session")
@limiter.limit(settings.GLOBAL_RATE_LIMIT)
async def leave_session(
    request: Request,
    req: LeaveSessionRequest,
    service: StandupSessionService = Depends(get_session_service)
):
    """Leave a session; the leader leaving closes it for everyone"""
    result = await service.leave_session(req.session_id, req.user_id, client_id=get_real_ip(request))
    return {**result, "success": True}

# =============================================================================
# EMAIL VERIFICATION
# =============================================================================


@app.post("/api/send-verification-code")
@limiter.limit(settings.GLOBAL_RATE_LIMIT)
async def send_verification_code(
    request: Request,
    req: SendCodeRequest,
    service: StandupSessionService = Depends(get_session_service)
):
    """Always answers with the same message, known address or not"""
    message = await service.send_verification_code(req.email)
    return {"success": True, "message": message}


@app.post("/api/verify-email")
@limiter.limit(settings.GLOBAL_RATE_LIMIT)
async def verify_email(
    request: Request,
    req: VerifyEmailRequest,
    service: StandupSessionService = Depends(get_session_service)
):
    token = await service.verify_email_code(req.email, req.code)
    return {"success": True, "token": token}


@app.get("/api/verify-email-token")
@limiter.limit(settings.GLOBAL_RATE_LIMIT)
async def verify_email_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    service: StandupSessionService = Depends(get_session_service)
):
    """Check a bearer email token; answers 401 for every kind of bad token"""
    if credentials is None:
        raise AuthenticationError("Invalid or expired token", reason="missing_header", code="INVALID_TOKEN")
    email = service.verify_email_token(credentials.credentials)
    return {"valid": True, "email": email}

# =============================================================================
# ACCESS GUARD
# =============================================================================


@app.post("/api/session-access/{session_id}")
@limiter.limit(settings.GLOBAL_RATE_LIMIT)
async def session_access(
    request: Request,
    session_id: str,
    cached: Optional[CachedIdentity] = None,
    guard: AccessGuard = Depends(get_access_guard)
):
    """
    Decide whether the room for ``session_id`` may render.

    The body is the client's cached identity. When the decision purges it,
    the client must clear its cache before following the redirect.
    """
    cache = cached.to_cache() if cached else LocalSessionCache()
    decision = await guard.evaluate(session_id, cache)
    return decision.to_dict()


@app.post("/api/landing-intent")
@limiter.limit(settings.GLOBAL_RATE_LIMIT)
async def landing_intent(request: Request, req: LandingRequest):
    intent = AccessGuard.resolve_landing(req.query, req.cache.to_cache())
    return {
        "mode": intent.mode.value,
        "sessionId": intent.session_id,
        "prefillName": intent.prefill_name,
        "focusPassword": intent.focus_password,
    }


# Main entry point
if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"🚀 Starting server on port {port}...")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info"
    )
