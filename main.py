import logging
import time
from dataclasses import asdict
from datetime import date
from typing import Annotated, Optional, Union

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import SessionLocal, session_scope
from models import Cost
from schemas import (
    CostIn,
    CostOut,
    RequestLogOut,
    TeamMemberOut,
    UserDetailOut,
    UserIn,
    UserOut,
)
from services import (
    MAX_LOG_LIMIT,
    CostService,
    MaintenanceService,
    ReportService,
    RequestLogService,
    UserAlreadyExists,
    UserNotFound,
    UserService,
    cents_to_amount,
)

settings = get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Cost Manager")
app.state.session_factory = SessionLocal


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def _error_path(loc) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path")]
    return ".".join(parts)


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"path": _error_path(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400, content={"message": "Validation error", "details": details}
    )


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"message": "Internal Error"})


def _write_request_log(session_factory, **fields) -> None:
    try:
        with session_scope(session_factory) as session:
            RequestLogService(session).write(**fields)
    except SQLAlchemyError:
        logger.exception("request_log_write_failed")


@app.middleware("http")
async def audit_requests(request: Request, call_next):
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = int((time.perf_counter() - started) * 1000)
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path
        logger.info(
            f"request: {request.method} {request.url.path} "
            f"status={status_code} duration_ms={duration_ms}"
        )
        await run_in_threadpool(
            _write_request_log,
            request.app.state.session_factory,
            method=request.method,
            path=str(request.url.path),
            status_code=status_code,
            duration_ms=duration_ms,
            endpoint=endpoint,
            ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )


def _cost_out(cost: Cost) -> CostOut:
    return CostOut(
        id=cost.id,
        userid=cost.user_id,
        description=cost.description,
        category=cost.category,
        sum=cents_to_amount(cost.amount_cents),
        day=cost.created_at.day,
        created_at=cost.created_at,
    )


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/api/about", response_model=list[TeamMemberOut])
def about():
    return [
        TeamMemberOut(first_name=first, last_name=last)
        for first, last in settings.team
    ]


@app.post("/api/add", status_code=201)
def add(
    payload: Annotated[Union[UserIn, CostIn], Body(discriminator="kind")],
    db: Session = Depends(get_db),
):
    if isinstance(payload, UserIn):
        try:
            user = UserService(db).create(payload)
        except UserAlreadyExists as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return UserOut.model_validate(user)

    try:
        cost = CostService(db).create(payload)
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _cost_out(cost)


@app.get("/api/report")
def monthly_report(
    response: Response,
    id: int = Query(...),
    year: int = Query(..., ge=1970, le=2100),
    month: int = Query(..., ge=1, le=12),
    db: Session = Depends(get_db),
):
    if not UserService(db).exists(id):
        raise HTTPException(status_code=404, detail="user not found")
    result = ReportService(db).resolve(id, year, month)
    response.headers["X-Report-Source"] = result.source.value
    return result.payload


@app.get("/api/users", response_model=list[UserOut])
def list_users(db: Session = Depends(get_db)):
    return UserService(db).list_all()


@app.get("/api/users/{user_id}", response_model=UserDetailOut)
def get_user(user_id: int, db: Session = Depends(get_db)):
    service = UserService(db)
    try:
        user = service.get(user_id)
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return UserDetailOut(
        id=user.id,
        first_name=user.first_name,
        last_name=user.last_name,
        total=service.total_for(user.id),
    )


@app.get("/api/logs", response_model=list[RequestLogOut])
def list_logs(
    limit: int = Query(MAX_LOG_LIMIT, ge=1, le=MAX_LOG_LIMIT),
    db: Session = Depends(get_db),
):
    return RequestLogService(db).list_recent(limit)


@app.post("/admin/purge-reports")
def purge_reports(
    user_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    deleted = ReportService(db).purge(user_id)
    return {"deleted": deleted}


@app.post("/admin/reset")
def reset_store(
    id: int = Query(123123),
    first_name: str = Query("mosh", min_length=1, max_length=64),
    last_name: str = Query("israeli", min_length=1, max_length=64),
    birthday: Optional[date] = Query(date(1990, 1, 1)),
    dry_run: bool = Query(False),
    db: Session = Depends(get_db),
):
    keep = UserIn(id=id, first_name=first_name, last_name=last_name, birthday=birthday)
    summary = MaintenanceService(db).reset(keep, dry_run=dry_run)
    return asdict(summary)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
