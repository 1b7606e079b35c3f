from __future__ import annotations

from typing import Annotated

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from . import schemas
from .core.config import settings
from .db import init_db
from .domain import ActivitySubmission, Caller, GpsPoint, GroupOutcome
from .errors import LedgerError, Unauthenticated
from .services.activity_service import ActivityService
from .services.ledger_service import LedgerService
from .services.treasury_service import TreasuryService

app = FastAPI(title="StakeLedger API", version="0.1.0", debug=settings.debug)

_STATUS_BY_CODE = {
    "unauthenticated": 401,
    "permission-denied": 403,
    "invalid-argument": 400,
    "not-found": 404,
    "failed-precondition": 409,
    "resource-exhausted": 429,
}


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database connections when the API boots."""

    init_db()


@app.exception_handler(LedgerError)
def ledger_error_handler(_request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(
        status_code=_STATUS_BY_CODE.get(exc.code, 500),
        content={"error": exc.code, "message": exc.message},
    )


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


def get_caller(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_email: Annotated[str | None, Header()] = None,
    x_user_admin: Annotated[bool, Header()] = False,
) -> Caller:
    """Identity forwarded by the authenticating proxy in front of the API."""

    if not x_user_id:
        raise Unauthenticated("You must be signed in.")
    return Caller(uid=x_user_id, email=x_user_email, is_admin=x_user_admin)


def get_ledger_service() -> LedgerService:
    return LedgerService()


def get_activity_service() -> ActivityService:
    return ActivityService()


def get_treasury_service() -> TreasuryService:
    return TreasuryService()


CallerDep = Annotated[Caller, Depends(get_caller)]
LedgerDep = Annotated[LedgerService, Depends(get_ledger_service)]


@app.post(
    "/markets",
    response_model=schemas.MarketReceipt,
    status_code=201,
    tags=["markets"],
    responses={403: {"model": schemas.ErrorResponse}},
)
def create_market(payload: schemas.MarketCreate, caller: CallerDep, ledger: LedgerDep):
    return ledger.create_market(
        caller,
        title=payload.title,
        description=payload.description,
        category=payload.category,
        deadline=payload.deadline,
        image_url=payload.image_url,
    )


@app.post(
    "/market-groups",
    response_model=schemas.MarketGroupReceipt,
    status_code=201,
    tags=["markets"],
    responses={403: {"model": schemas.ErrorResponse}},
)
def create_market_group(payload: schemas.MarketGroupCreate, caller: CallerDep, ledger: LedgerDep):
    return ledger.create_market_group(
        caller,
        group_title=payload.group_title,
        description=payload.description,
        category=payload.category,
        markets=[GroupOutcome(title=item.title, deadline=item.deadline) for item in payload.markets],
    )


@app.post("/markets/{market_id}/close", response_model=schemas.MarketStatusOut, tags=["markets"])
def close_market(market_id: str, caller: CallerDep, ledger: LedgerDep):
    status = ledger.close_market(caller, market_id)
    return schemas.MarketStatusOut(market_id=market_id, status=status)


@app.post(
    "/markets/{market_id}/bets",
    response_model=schemas.BetReceipt,
    status_code=201,
    tags=["bets"],
    responses={409: {"model": schemas.ErrorResponse}},
)
def place_bet(market_id: str, payload: schemas.BetCreate, caller: CallerDep, ledger: LedgerDep):
    return ledger.place_bet(caller, market_id, side=payload.position, amount=payload.amount)


@app.post("/markets/{market_id}/resolve", response_model=schemas.ResolutionOut, tags=["markets"])
def resolve_market(
    market_id: str, payload: schemas.ResolveRequest, caller: CallerDep, ledger: LedgerDep
):
    return ledger.resolve_market(caller, market_id, outcome=payload.outcome)


@app.post("/markets/{market_id}/cancel", response_model=schemas.CancellationOut, tags=["markets"])
def cancel_market(market_id: str, caller: CallerDep, ledger: LedgerDep):
    return ledger.cancel_market(caller, market_id)


@app.post("/markets/{market_id}/claim", response_model=schemas.ClaimOut, tags=["bets"])
def claim_winnings(market_id: str, caller: CallerDep, ledger: LedgerDep):
    return ledger.claim_winnings(caller, market_id)


@app.post(
    "/activities",
    response_model=schemas.ActivityResultOut,
    status_code=201,
    tags=["activities"],
    responses={429: {"model": schemas.ErrorResponse}},
)
def submit_activity(
    payload: schemas.ActivityCreate,
    caller: CallerDep,
    activities: Annotated[ActivityService, Depends(get_activity_service)],
):
    submission = ActivitySubmission(
        distance_km=payload.distance_km,
        duration_seconds=payload.duration_seconds,
        points=[GpsPoint.from_mapping(point.model_dump()) for point in payload.points],
        started_at=payload.started_at,
        ended_at=payload.ended_at,
        submission_id=payload.submission_id,
    )
    return activities.submit_activity(caller, submission)


@app.get("/me/balance", response_model=schemas.BalanceOut, tags=["accounts"])
def get_balance(caller: CallerDep, ledger: LedgerDep):
    """Return the caller's ledger balance, provisioning the account on first use."""

    return ledger.ensure_account(caller.uid, email=caller.email)


@app.get("/admin/treasury", response_model=schemas.TreasuryStatusOut, tags=["admin"])
def treasury_status(
    caller: CallerDep,
    ledger: LedgerDep,
    treasury: Annotated[TreasuryService, Depends(get_treasury_service)],
):
    ledger.require_admin(caller)
    return treasury.status()
