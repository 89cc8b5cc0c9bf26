"""
FastAPI application for the phased voting coordinator.

Voters log in, cast one ballot per open round and receive live election
views over a WebSocket. An admin advances the phase or resets the election.
"""
import logging
import secrets
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from phased_voting.shared.errors import (
    AlreadyVoted,
    InvalidCandidateForRound,
    InvalidCredentials,
    PhaseTransitionError,
    StoreUnavailable,
    VoteInProgress,
    VotingClosed,
    VotingError,
    WriteConflict,
)
from phased_voting.shared.models import Participant, Phase
from phased_voting.election_api.config import settings
from phased_voting.election_api.ledger import BallotLedger
from phased_voting.election_api.models import (
    ElectionStateResponse,
    ErrorResponse,
    HealthResponse,
    LoginRequest,
    LoginResponse,
    ParticipantOut,
    PhaseResponse,
    ResetRequest,
    ResetResponse,
    VoteRequest,
    VoteResponse,
    view_payload,
)
from phased_voting.election_api.phases import PhaseController
from phased_voting.election_api.seed import load_roster_seed, parse_roster_seed
from phased_voting.election_api.sessions import SessionRegistry
from phased_voting.election_api.store import RecordStore, create_store
from phased_voting.election_api.sync import SyncCoordinator, snapshot_view

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Prometheus metrics
ballots_cast = Counter(
    "ballots_cast_total",
    "Total number of accepted ballots",
    ["phase"]
)
ballot_rejections = Counter(
    "ballot_rejections_total",
    "Total number of rejected ballots",
    ["reason"]
)
phase_transitions = Counter(
    "phase_transitions_total",
    "Total number of phase transitions",
    ["phase"]
)
election_resets = Counter(
    "election_resets_total",
    "Total number of election resets"
)
active_sessions = Gauge(
    "active_sessions",
    "Currently open live-update connections"
)
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

ERROR_STATUS = {
    InvalidCredentials: status.HTTP_401_UNAUTHORIZED,
    AlreadyVoted: status.HTTP_409_CONFLICT,
    VoteInProgress: status.HTTP_409_CONFLICT,
    VotingClosed: status.HTTP_403_FORBIDDEN,
    InvalidCandidateForRound: status.HTTP_400_BAD_REQUEST,
    PhaseTransitionError: status.HTTP_409_CONFLICT,
    WriteConflict: status.HTTP_409_CONFLICT,
    StoreUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid candidate for this round"},
    401: {"model": ErrorResponse, "description": "Invalid credentials or session"},
    403: {"model": ErrorResponse, "description": "Voting closed"},
    409: {"model": ErrorResponse, "description": "Already voted or vote in progress"},
    503: {"model": ErrorResponse, "description": "Record store unavailable"},
}

router = APIRouter(prefix=f"/api/{settings.API_VERSION}")


async def voting_error_handler(request: Request, exc: VotingError) -> JSONResponse:
    """Render coordinator errors as ErrorResponse bodies."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    body = ErrorResponse(error=exc.code, message=exc.message)
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def prometheus_middleware(request: Request, call_next):
    """Middleware to track request duration."""
    start_time = time.perf_counter()
    response = await call_next(request)
    request_duration.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code
    ).observe(time.perf_counter() - start_time)
    return response


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _require_admin(token: Optional[str]) -> None:
    if not token or not secrets.compare_digest(token, settings.ADMIN_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin token required"
        )


def _participant_out(participant: Participant) -> ParticipantOut:
    return ParticipantOut(**participant.to_public_dict())


@router.post(
    "/login",
    response_model=LoginResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid credentials"},
        429: {"description": "Rate limit exceeded"}
    }
)
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def login(request: Request, credentials: LoginRequest) -> LoginResponse:
    """
    Log in with admission number and roll number.

    Returns a bearer token for the vote and live-update endpoints.
    """
    session = await request.app.state.sessions.login(credentials.externalId, credentials.secret)
    return LoginResponse(token=session.token, participant=_participant_out(session.participant))


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(request: Request, authorization: Optional[str] = Header(None)) -> Response:
    """Close the caller's session."""
    token = _bearer_token(authorization)
    if token:
        request.app.state.sessions.close(token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/election",
    response_model=ElectionStateResponse,
    responses={503: {"model": ErrorResponse, "description": "Record store unavailable"}}
)
async def get_election(request: Request, authorization: Optional[str] = Header(None)) -> dict:
    """
    Current phase, roster, shortlist and the candidates eligible right now.

    With a bearer token the caller's own record is included as `you`.
    """
    voter_id = None
    token = _bearer_token(authorization)
    if token:
        voter_id = request.app.state.sessions.get(token).voter_id

    view = await snapshot_view(request.app.state.store, settings.SHORTLIST_SIZE)
    return view_payload(view, voter_id)


@router.post(
    "/vote",
    response_model=VoteResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**ERROR_RESPONSES, 500: {"model": ErrorResponse, "description": "Internal server error"}}
)
async def cast_vote(
    request: Request,
    vote: VoteRequest,
    authorization: Optional[str] = Header(None)
) -> VoteResponse:
    """
    Cast the session voter's ballot for the currently open round.

    - **candidateId**: participant id of the chosen candidate
    - **phase**: optional round the client is voting in; a ballot for a round
      that has meanwhile closed is rejected instead of counted elsewhere
    """
    try:
        session = request.app.state.sessions.get(_bearer_token(authorization))
        ballot = await session.cast_vote(vote.candidateId, vote.phase)
    except VotingError as e:
        ballot_rejections.labels(reason=e.code).inc()
        raise
    except Exception as e:
        ballot_rejections.labels(reason="internal_error").inc()
        logger.error(f"Error casting vote: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    ballots_cast.labels(phase=ballot.phase.value).inc()
    return VoteResponse(phase=ballot.phase, candidateId=ballot.candidateId, castAt=ballot.castAt)


@router.post(
    "/admin/advance",
    response_model=PhaseResponse,
    responses={
        403: {"description": "Admin token required"},
        409: {"model": ErrorResponse, "description": "Phase cannot be advanced"}
    }
)
async def advance_phase(request: Request, x_admin_token: Optional[str] = Header(None)) -> PhaseResponse:
    """Move the election one phase forward."""
    _require_admin(x_admin_token)
    phase = await request.app.state.phases.advance_phase()
    phase_transitions.labels(phase=phase.value).inc()
    return PhaseResponse(phase=phase, message=f"Phase changed to: {phase.value}")


@router.post(
    "/admin/reset",
    response_model=ResetResponse,
    responses={
        400: {"description": "Confirmation missing or no roster seed"},
        403: {"description": "Admin token required"}
    }
)
async def reset_election(
    request: Request,
    body: ResetRequest,
    x_admin_token: Optional[str] = Header(None)
) -> ResetResponse:
    """
    Wipe every vote, reseed the roster and return to VOTING.

    Destructive: the body must carry `"confirm": true`.
    """
    _require_admin(x_admin_token)
    if not body.confirm:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Reset wipes all votes; resend with confirm=true"
        )

    if body.roster is not None:
        seed: Optional[List[Participant]] = parse_roster_seed(entry.model_dump() for entry in body.roster)
    else:
        seed = request.app.state.roster_seed
    if seed is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No roster seed configured"
        )

    try:
        count = await request.app.state.phases.reset_election(seed)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    request.app.state.sessions.retain(p.id for p in seed)
    election_resets.inc()
    return ResetResponse(phase=Phase.VOTING, participants=count)


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        503: {"model": HealthResponse, "description": "Service unhealthy"}
    }
)
async def health_check(request: Request) -> JSONResponse:
    """Check health of the service and its record store."""
    services = {}

    try:
        healthy = await request.app.state.store.ping()
        services["record_store"] = "connected" if healthy else "disconnected"
    except Exception as e:
        logger.error(f"Record store health check error: {e}")
        services["record_store"] = "error"

    all_healthy = all(state == "connected" for state in services.values())

    response = HealthResponse(
        status="healthy" if all_healthy else "unhealthy",
        services=services,
        timestamp=datetime.utcnow()
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(mode="json")
    )


@router.websocket("/ws")
async def election_updates(websocket: WebSocket, token: Optional[str] = None):
    """
    Live election view for one session.

    Pushes the consolidated view right after connecting and again on every
    phase or roster change. Incoming messages are ignored.
    """
    state = websocket.app.state
    try:
        session = state.sessions.get(token)
    except InvalidCredentials:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()

    async def push(view):
        await websocket.send_json(view_payload(view, session.voter_id))

    coordinator = SyncCoordinator(state.store, push, settings.SHORTLIST_SIZE)
    active_sessions.inc()
    try:
        await coordinator.start()
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"Live updates closed for {session.voter_id}")
    except StoreUnavailable as e:
        logger.error(f"Live updates unavailable for {session.voter_id}: {e}")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
    finally:
        await coordinator.close()
        active_sessions.dec()


@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def create_app(
    store: Optional[RecordStore] = None,
    roster_seed: Optional[List[Participant]] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        store: Record store to use; built from settings on startup when None
        roster_seed: Roster used by reset; read from ROSTER_SEED_FILE when None
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events."""
        # Startup
        logger.info(f"Starting {settings.SERVICE_NAME} service...")

        try:
            app.state.store = store if store is not None else create_store(settings)
            if not await app.state.store.ping():
                raise StoreUnavailable("Record store did not answer ping")
            logger.info(f"Record store connected ({type(app.state.store).__name__})")

            app.state.ledger = BallotLedger(app.state.store, settings.SHORTLIST_SIZE)
            app.state.phases = PhaseController(app.state.store)
            app.state.sessions = SessionRegistry(
                app.state.store, app.state.ledger, ttl_seconds=settings.SESSION_TTL_SECONDS
            )

            app.state.roster_seed = roster_seed
            if roster_seed is None and settings.ROSTER_SEED_FILE:
                app.state.roster_seed = load_roster_seed(settings.ROSTER_SEED_FILE)
                logger.info(
                    f"Loaded roster seed: {len(app.state.roster_seed)} participants "
                    f"from {settings.ROSTER_SEED_FILE}"
                )

            logger.info(f"{settings.SERVICE_NAME} started successfully")

        except Exception as e:
            logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
            raise

        yield

        # Shutdown
        logger.info(f"Shutting down {settings.SERVICE_NAME} service...")

        try:
            app.state.sessions.clear()
            if store is None:
                await app.state.store.close()
            logger.info(f"{settings.SERVICE_NAME} shut down successfully")

        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    app = FastAPI(
        title="Phased Voting Coordinator",
        description="Two-round election with live tallies",
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
    app.add_exception_handler(VotingError, voting_error_handler)
    app.middleware("http")(prometheus_middleware)

    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        prefix = f"/api/{settings.API_VERSION}"
        return {
            "service": settings.SERVICE_NAME,
            "version": settings.API_VERSION,
            "status": "running",
            "endpoints": {
                "login": f"{prefix}/login",
                "election": f"{prefix}/election",
                "vote": f"{prefix}/vote",
                "live_updates": f"{prefix}/ws",
                "health": f"{prefix}/health",
                "metrics": f"{prefix}/metrics"
            }
        }

    return app


app = create_app()


def run():
    """Run the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "phased_voting.election_api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )


if __name__ == "__main__":
    run()
