"""
FastAPI application for the campus ballot voting API.

Voter routes (candidates, cast, status, results), account routes and the
administration routes, all under /api/{API_VERSION}.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from ..core import ElectionAdmin, MemoryStorage, ResultsReader, Storage, VoteCastTransaction
from ..shared.errors import (
    AlreadyVoted,
    Forbidden,
    InvalidCredentials,
    StorageUnavailable,
    VotingError,
)
from ..shared.models import Selection, User
from .auth import AccountService, JWTAuthProvider
from .config import settings
from .database import PostgresStorage
from .models import (
    CandidateCreate,
    CandidateResponse,
    CandidateUpdate,
    CastVoteRequest,
    CastVoteResponse,
    ErrorResponse,
    HealthResponse,
    LoginRequest,
    ReconcileResponse,
    RegisterRequest,
    ResultsResponse,
    TokenResponse,
    VoteStatusResponse,
)
from .status_cache import VoterStatusCache

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

API_PREFIX = f"/api/{settings.API_VERSION}"
RETRY_AFTER_SECONDS = "1"

# Prometheus metrics
ballots_cast = Counter(
    "ballots_cast_total",
    "Total number of ballots cast"
)
vote_errors = Counter(
    "vote_errors_total",
    "Total number of rejected or failed requests",
    ["error_type"]
)
cast_duration = Histogram(
    "ballot_cast_duration_seconds",
    "Time spent validating and applying a ballot"
)
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)

storage: Optional[Storage] = None
voter_cache = VoterStatusCache(settings.redis_url)
caster: Optional[VoteCastTransaction] = None
reader: Optional[ResultsReader] = None
admin: Optional[ElectionAdmin] = None
accounts: Optional[AccountService] = None

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


def create_storage() -> Storage:
    """Build the storage backend named by STORAGE_BACKEND."""
    if settings.STORAGE_BACKEND == "memory":
        return MemoryStorage()
    if settings.STORAGE_BACKEND == "postgres":
        return PostgresStorage(settings.postgres_dsn, settings.STORAGE_TIMEOUT_SECONDS)
    raise ValueError(f"Unknown storage backend: {settings.STORAGE_BACKEND}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global storage, caster, reader, admin, accounts

    logger.info(f"Starting {settings.SERVICE_NAME} service...")

    try:
        storage = create_storage()
        await storage.initialize()
        await voter_cache.initialize()

        timeout = settings.STORAGE_TIMEOUT_SECONDS
        caster = VoteCastTransaction(
            storage,
            timeout=timeout,
            follow_up_attempts=settings.FOLLOW_UP_MAX_ATTEMPTS,
            retry_delay=settings.FOLLOW_UP_RETRY_DELAY_SECONDS,
        )
        reader = ResultsReader(storage, timeout=timeout)
        admin = ElectionAdmin(storage, timeout=timeout)
        accounts = AccountService(
            storage,
            JWTAuthProvider(
                secret=settings.JWT_SECRET,
                algorithm=settings.JWT_ALGORITHM,
                expire_minutes=settings.JWT_EXPIRE_MINUTES,
                bcrypt_rounds=settings.BCRYPT_ROUNDS,
            ),
            timeout=timeout,
        )

        logger.info(
            f"{settings.SERVICE_NAME} started successfully "
            f"(storage={settings.STORAGE_BACKEND}, cache={'on' if voter_cache.enabled else 'off'})"
        )

    except Exception as e:
        logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
        raise

    yield

    logger.info(f"Shutting down {settings.SERVICE_NAME} service...")

    try:
        await voter_cache.close()
        await storage.close()
        logger.info(f"{settings.SERVICE_NAME} shut down successfully")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


# Create FastAPI app
app = FastAPI(
    title="Campus Ballot API",
    description="Student election: ballot casting, results and administration",
    version=settings.API_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(VotingError)
async def voting_error_handler(request: Request, exc: VotingError) -> JSONResponse:
    """Map domain errors to their status code and a stable error body."""
    vote_errors.labels(error_type=exc.code).inc()
    headers = None
    if isinstance(exc, StorageUnavailable):
        headers = {"Retry-After": RETRY_AFTER_SECONDS}
    elif isinstance(exc, InvalidCredentials):
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    """Middleware to track request duration."""
    started = datetime.now(timezone.utc)
    response = await call_next(request)
    elapsed = (datetime.now(timezone.utc) - started).total_seconds()

    route = request.scope.get("route")
    request_duration.labels(
        method=request.method,
        endpoint=getattr(route, "path", request.url.path),
        status=response.status_code
    ).observe(elapsed)

    return response


bearer_scheme = HTTPBearer(auto_error=False)


async def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    if credentials is None:
        raise InvalidCredentials("Not authorized, no token")
    return await accounts.authenticate(credentials.credentials)


async def admin_user(user: User = Depends(current_user)) -> User:
    if not user.is_admin:
        raise Forbidden()
    return user


def _token_response(user: User) -> TokenResponse:
    return TokenResponse(
        access_token=accounts.issue_token(user),
        user=user.to_public_dict(),
    )


# ═══════════════════════════════════════════════════════════════════
# AUTH ENDPOINTS
# ═══════════════════════════════════════════════════════════════════

@app.post(
    f"{API_PREFIX}/auth/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse, "description": "User already exists"}}
)
async def register(payload: RegisterRequest) -> TokenResponse:
    """Register a student and return a bearer token."""
    user = await accounts.register(
        student_id=payload.student_id,
        name=payload.name,
        email=payload.email,
        password=payload.password,
        department=payload.department,
        year=payload.year,
    )
    return _token_response(user)


@app.post(
    f"{API_PREFIX}/auth/login",
    response_model=TokenResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid credentials"}}
)
async def login(payload: LoginRequest) -> TokenResponse:
    user = await accounts.login(payload.student_id, payload.password)
    return _token_response(user)


@app.get(f"{API_PREFIX}/auth/me")
async def me(user: User = Depends(current_user)) -> dict:
    return user.to_public_dict()


# ═══════════════════════════════════════════════════════════════════
# VOTER ENDPOINTS
# ═══════════════════════════════════════════════════════════════════

@app.get(f"{API_PREFIX}/votes/candidates")
async def get_candidates(user: User = Depends(current_user)) -> dict:
    """Active candidates grouped by position."""
    grouped = await reader.get_candidates()
    return {
        position: [c.to_dict() for c in candidates]
        for position, candidates in grouped.items()
    }


@app.post(
    f"{API_PREFIX}/votes/cast",
    response_model=CastVoteResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid ballot"},
        403: {"model": ErrorResponse, "description": "User has already voted"},
        409: {"model": ErrorResponse, "description": "Ballot already exists"},
        429: {"description": "Rate limit exceeded"},
        503: {"model": ErrorResponse, "description": "Storage unavailable, retry"}
    }
)
@limiter.limit(settings.RATE_LIMIT)
async def cast_vote(
    request: Request,
    ballot: CastVoteRequest,
    user: User = Depends(current_user),
) -> CastVoteResponse:
    """
    Cast the authenticated user's ballot.

    - **votes**: list of {position, candidate_id}, at most one per position

    Returns the ballot id and its timestamp.
    """
    if await voter_cache.is_marked(user.id):
        if user.has_voted:
            raise AlreadyVoted()
        logger.warning(f"Stale voter cache entry for user {user.id}, removing it")
        await voter_cache.unmark(user.id)

    selections = [
        Selection(position=v.position, candidate_id=v.candidate_id)
        for v in ballot.votes
    ]

    try:
        with cast_duration.time():
            receipt = await caster.cast(
                user.id,
                selections,
                ip_address=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent"),
            )

    except AlreadyVoted:
        await voter_cache.mark(user.id)
        raise
    except VotingError:
        raise
    except Exception as e:
        vote_errors.labels(error_type="internal_error").inc()
        logger.error(f"Error casting ballot for user {user.id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    await voter_cache.mark(user.id)
    ballots_cast.inc()

    return CastVoteResponse(ballot_id=receipt.ballot_id, timestamp=receipt.timestamp)


@app.get(f"{API_PREFIX}/votes/status", response_model=VoteStatusResponse)
async def get_vote_status(user: User = Depends(current_user)) -> VoteStatusResponse:
    vote_status = await reader.get_vote_status(user.id)
    return VoteStatusResponse(has_voted=vote_status.has_voted, voted_at=vote_status.voted_at)


@app.get(
    f"{API_PREFIX}/votes/results",
    response_model=ResultsResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid token"},
        503: {"model": ErrorResponse, "description": "Storage unavailable"}
    }
)
async def get_results(user: User = Depends(current_user)) -> ResultsResponse:
    """
    Current results by position with turnout.

    Clients refresh by polling this endpoint.
    """
    try:
        results = await reader.get_results()
        return ResultsResponse(**results)

    except VotingError:
        raise
    except Exception as e:
        logger.error(f"Error getting results: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )


# ═══════════════════════════════════════════════════════════════════
# ADMIN ENDPOINTS
# ═══════════════════════════════════════════════════════════════════

@app.post(
    f"{API_PREFIX}/admin/candidates",
    response_model=CandidateResponse,
    status_code=status.HTTP_201_CREATED
)
async def add_candidate(payload: CandidateCreate, user: User = Depends(admin_user)):
    candidate = await admin.add_candidate(**payload.model_dump())
    return candidate.to_dict()


@app.get(f"{API_PREFIX}/admin/candidates", response_model=List[CandidateResponse])
async def list_candidates(user: User = Depends(admin_user)):
    return [c.to_dict() for c in await admin.list_candidates()]


@app.put(f"{API_PREFIX}/admin/candidates/{{candidate_id}}", response_model=CandidateResponse)
async def update_candidate(
    candidate_id: str,
    payload: CandidateUpdate,
    user: User = Depends(admin_user),
):
    """Update a candidate. A vote_count in the body is ignored."""
    fields = payload.model_dump(exclude_unset=True, exclude_none=True)
    candidate = await admin.update_candidate(candidate_id, fields)
    return candidate.to_dict()


@app.delete(f"{API_PREFIX}/admin/candidates/{{candidate_id}}")
async def delete_candidate(candidate_id: str, user: User = Depends(admin_user)) -> dict:
    """Deactivate a candidate; its ballots and vote count are kept."""
    await admin.deactivate_candidate(candidate_id)
    return {"message": "Candidate deactivated successfully"}


@app.get(f"{API_PREFIX}/admin/stats")
async def get_statistics(user: User = Depends(admin_user)) -> dict:
    try:
        return await reader.get_statistics()

    except VotingError:
        raise
    except Exception as e:
        logger.error(f"Error getting statistics: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )


@app.get(f"{API_PREFIX}/admin/users")
async def list_users(user: User = Depends(admin_user)) -> List[dict]:
    return [u.to_public_dict() for u in await admin.list_users()]


@app.post(f"{API_PREFIX}/admin/reset")
async def reset_election(user: User = Depends(admin_user)) -> dict:
    """Clear the voter cache, then archive current tallies and clear ballots, counts and flags."""
    await voter_cache.clear()
    record = await admin.reset_election(reset_by=user.student_id)
    return {"message": "Election reset successfully", "record": record.to_dict()}


@app.get(f"{API_PREFIX}/admin/history")
async def get_history(user: User = Depends(admin_user)) -> List[dict]:
    return [record.to_dict() for record in await admin.history()]


@app.post(f"{API_PREFIX}/admin/reconcile", response_model=ReconcileResponse)
async def reconcile(user: User = Depends(admin_user)) -> ReconcileResponse:
    """Recompute every vote count and voted flag from the stored ballots."""
    outcome = await admin.reconcile()
    return ReconcileResponse(**outcome)


# ═══════════════════════════════════════════════════════════════════
# OPERATIONAL ENDPOINTS
# ═══════════════════════════════════════════════════════════════════

@app.get(
    f"{API_PREFIX}/health",
    response_model=HealthResponse,
    responses={
        503: {"model": HealthResponse, "description": "Service unhealthy"}
    }
)
async def health_check() -> JSONResponse:
    """
    Check health of the service and its dependencies.

    Storage must be reachable. The voter cache is advisory: it is reported
    but never makes the service unhealthy.
    """
    services = {}

    try:
        storage_healthy = await storage.check_health()
        services["storage"] = "connected" if storage_healthy else "disconnected"
    except Exception as e:
        logger.error(f"Storage health check error: {e}")
        services["storage"] = "error"

    if voter_cache.enabled:
        services["redis"] = "connected" if await voter_cache.check_health() else "disconnected"
    else:
        services["redis"] = "disabled"

    healthy = services["storage"] == "connected"
    response = HealthResponse(
        status="healthy" if healthy else "unhealthy",
        services=services,
        timestamp=datetime.now(timezone.utc)
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(mode="json")
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.SERVICE_NAME,
        "version": settings.API_VERSION,
        "status": "running",
        "endpoints": {
            "candidates": f"{API_PREFIX}/votes/candidates",
            "cast_vote": f"{API_PREFIX}/votes/cast",
            "vote_status": f"{API_PREFIX}/votes/status",
            "results": f"{API_PREFIX}/votes/results",
            "health": f"{API_PREFIX}/health",
            "metrics": "/metrics"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "campus_ballot.voting_api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
