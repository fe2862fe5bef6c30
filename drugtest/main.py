"""HTTP API for the drug-test clinic backend."""

from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date
from typing import Any, Dict, List, Literal, Optional, Tuple, Type

import sqlalchemy as sa
import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session
from structlog.contextvars import bind_contextvars, unbind_contextvars

from .alerts import (
    AdminAlertNotFoundError,
    list_admin_alerts,
    resolve_admin_alert,
    serialize_admin_alert,
)
from .client_medications import (
    MedicationLockedError,
    MedicationNotFoundError,
    add_client_medication,
    list_client_medications,
    serialize_medication_record,
    update_client_medication,
)
from .config import get_app_settings
from .confirmation import ConfirmationPendingError
from .db import get_engine, get_session, init_db
from .drug_tests import (
    ClientNotFoundError,
    DrugTestLockedError,
    DrugTestNotFoundError,
    create_drug_test,
    create_instant_test,
    finalize_confirmation,
    get_drug_test,
    list_drug_tests,
    mark_inconclusive,
    preview_classification,
    record_collection,
    record_confirmation_decision,
    record_confirmation_results,
    record_screen,
    reschedule_drug_test,
    serialize_drug_test,
)
from .observability import configure_logging
from .scheduling import (
    TechnicianNotFoundError,
    create_schedule_override,
    day_of_week,
    determine_time_slot,
    find_technician_on_duty,
    list_schedule_overrides,
    list_technicians,
    serialize_override,
    serialize_technician,
    weekly_roster,
)
from .screening import InvalidTransitionError
from .substances import get_substance_options


configure_logging(get_app_settings().log_level)

logger = structlog.get_logger(__name__)

_TRACE_ID_CTX: ContextVar[str | None] = ContextVar("trace_id", default=None)

START_TIME = time.time()


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Details describing an error response payload."""

    code: int | str | None = None
    message: str
    details: Any | None = None

    model_config = {"extra": "allow"}


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


# Domain exception -> (HTTP status, error code)
_DOMAIN_ERRORS: Dict[Type[Exception], Tuple[int, str]] = {
    DrugTestNotFoundError: (404, "drug_test_not_found"),
    ClientNotFoundError: (404, "client_not_found"),
    TechnicianNotFoundError: (404, "technician_not_found"),
    MedicationNotFoundError: (404, "medication_not_found"),
    AdminAlertNotFoundError: (404, "admin_alert_not_found"),
    InvalidTransitionError: (409, "invalid_transition"),
    DrugTestLockedError: (409, "drug_test_locked"),
    MedicationLockedError: (409, "medication_locked"),
    ConfirmationPendingError: (409, "confirmation_pending"),
    ValueError: (422, "invalid_input"),
}


def _build_error_response(message: str, code: int | str | None, details: Any | None = None) -> ErrorResponse:
    payload: Dict[str, Any] = {"message": message or "An error occurred"}
    if code is not None:
        payload["code"] = code
    if details is not None:
        payload["details"] = details
    return ErrorResponse(error=ErrorDetail(**payload))


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised indirectly in integration
    logger.info("lifespan_startup")
    init_db(get_engine())
    start_ts = time.time()
    try:
        yield
    finally:
        logger.info("lifespan_shutdown_complete", uptime=time.time() - start_ts)


app = FastAPI(title="Drug Test Clinic API", lifespan=lifespan)


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    token = _TRACE_ID_CTX.set(trace_id)
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    request.state.trace_id = trace_id
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        logger.exception("request_failed", path=request.url.path, method=request.method)
        raise
    finally:
        if response is not None:
            response.headers["X-Trace-Id"] = trace_id
        unbind_contextvars("trace_id", "path", "method")
        _TRACE_ID_CTX.reset(token)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert ``HTTPException`` instances into the standard error envelope."""

    error_payload = _build_error_response(str(exc.detail), exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload.model_dump(),
        headers=dict(exc.headers or {}),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "; ".join(str(item.get("msg")) for item in errors if item.get("msg")) or "Invalid request"
    error_payload = _build_error_response(message, "invalid_input", details=jsonable_errors(errors))
    return JSONResponse(status_code=422, content=error_payload.model_dump())


def jsonable_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {"loc": [str(part) for part in item.get("loc", ())], "msg": str(item.get("msg", "")), "type": item.get("type")}
        for item in errors
    ]


async def domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code, code = 500, "internal_error"
    for exc_cls in type(exc).__mro__:
        if exc_cls in _DOMAIN_ERRORS:
            status_code, code = _DOMAIN_ERRORS[exc_cls]
            break
    details = None
    if isinstance(exc, ConfirmationPendingError):
        details = {"pendingSubstances": exc.pending}
    elif isinstance(exc, InvalidTransitionError):
        details = {"from": exc.current, "to": exc.target}
    logger.info("request_rejected", code=code, status=status_code, error=str(exc))
    error_payload = _build_error_response(str(exc), code, details)
    return JSONResponse(status_code=status_code, content=error_payload.model_dump())


for _exc_cls in _DOMAIN_ERRORS:
    app.add_exception_handler(_exc_cls, domain_exception_handler)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class PreviewRequest(BaseModel):
    client_id: Optional[int] = Field(default=None, alias="clientId")
    detected_substances: List[str] = Field(default_factory=list, alias="detectedSubstances")
    medications: Optional[List[Dict[str, Any]]] = None
    test_type: Optional[str] = Field(default=None, alias="testType")
    collection_date: Optional[date] = Field(default=None, alias="collectionDate")
    breathalyzer_taken: bool = Field(default=False, alias="breathalyzerTaken")
    breathalyzer_result: Optional[float] = Field(default=None, alias="breathalyzerResult", ge=0)

    model_config = ConfigDict(populate_by_name=True)


class DrugTestCreate(BaseModel):
    client_id: int = Field(alias="clientId")
    test_type: str = Field(alias="testType")
    collection_date: date = Field(alias="collectionDate")
    collection_time: Optional[str] = Field(default=None, alias="collectionTime")
    technician_id: Optional[int] = Field(default=None, alias="technicianId")
    medications: Optional[List[Dict[str, Any]]] = None

    model_config = ConfigDict(populate_by_name=True)


class InstantTestCreate(DrugTestCreate):
    detected_substances: List[str] = Field(default_factory=list, alias="detectedSubstances")
    breathalyzer_taken: bool = Field(default=False, alias="breathalyzerTaken")
    breathalyzer_result: Optional[float] = Field(default=None, alias="breathalyzerResult", ge=0)
    is_dilute: bool = Field(default=False, alias="isDilute")


class RescheduleRequest(BaseModel):
    collection_date: Optional[date] = Field(default=None, alias="collectionDate")
    collection_time: Optional[str] = Field(default=None, alias="collectionTime")
    technician_id: Optional[int] = Field(default=None, alias="technicianId")

    model_config = ConfigDict(populate_by_name=True)


class CollectRequest(BaseModel):
    technician_id: Optional[int] = Field(default=None, alias="technicianId")

    model_config = ConfigDict(populate_by_name=True)


class ScreenRequest(BaseModel):
    detected_substances: List[str] = Field(default_factory=list, alias="detectedSubstances")
    breathalyzer_taken: bool = Field(default=False, alias="breathalyzerTaken")
    breathalyzer_result: Optional[float] = Field(default=None, alias="breathalyzerResult", ge=0)
    is_dilute: bool = Field(default=False, alias="isDilute")

    model_config = ConfigDict(populate_by_name=True)


class ConfirmationDecisionRequest(BaseModel):
    decision: str
    substances: Optional[List[str]] = None


class ConfirmationResultPayload(BaseModel):
    substance: str
    result: str
    notes: Optional[str] = None


class ConfirmationResultsRequest(BaseModel):
    results: List[ConfirmationResultPayload] = Field(min_length=1)


class InconclusiveRequest(BaseModel):
    reason: Optional[str] = None


class MedicationCreate(BaseModel):
    name: str = Field(min_length=1)
    detected_as: List[str] = Field(default_factory=list, alias="detectedAs")
    require_confirmation: bool = Field(default=False, alias="requireConfirmation")
    category: Optional[str] = None
    status: str = "active"
    start_date: Optional[date] = Field(default=None, alias="startDate")
    end_date: Optional[date] = Field(default=None, alias="endDate")

    model_config = ConfigDict(populate_by_name=True)


class MedicationUpdate(BaseModel):
    name: Optional[str] = None
    detected_as: Optional[List[str]] = Field(default=None, alias="detectedAs")
    require_confirmation: Optional[bool] = Field(default=None, alias="requireConfirmation")
    category: Optional[str] = None
    status: Optional[str] = None
    start_date: Optional[date] = Field(default=None, alias="startDate")
    end_date: Optional[date] = Field(default=None, alias="endDate")

    model_config = ConfigDict(populate_by_name=True)


class ScheduleOverrideCreate(BaseModel):
    on_date: date = Field(alias="date")
    time_slot: str = Field(alias="timeSlot")
    technician_id: int = Field(alias="technicianId")
    reason: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"])
async def health(session: Session = Depends(get_session)):
    """Lightweight health check that also runs a trivial database query."""

    try:
        session.execute(sa.text("SELECT 1"))
        db_ok = True
    except sa.exc.SQLAlchemyError:
        logger.warning("health_db_check_failed", exc_info=True)
        db_ok = False
    return {"status": "ok", "uptime": round(time.time() - START_TIME, 2), "db": db_ok}


@app.get("/metrics", response_model=None, tags=["system"])
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Substances and classification
# ---------------------------------------------------------------------------


@app.get("/api/substances", tags=["substances"])
async def substances(test_type: Optional[str] = Query(default=None, alias="testType")):
    return {"testType": test_type, "options": get_substance_options(test_type)}


@app.post("/api/drug-tests/preview", tags=["drug-tests"])
async def preview(model: PreviewRequest, session: Session = Depends(get_session)) -> Dict[str, Any]:
    """Classify a screen without saving it."""

    classification = preview_classification(
        session,
        model.detected_substances,
        client_id=model.client_id,
        medications=model.medications,
        test_type=model.test_type,
        collection_date=model.collection_date,
        breathalyzer_taken=model.breathalyzer_taken,
        breathalyzer_result=model.breathalyzer_result,
    )
    return classification.to_dict()


# ---------------------------------------------------------------------------
# Drug tests
# ---------------------------------------------------------------------------


@app.post("/api/drug-tests", status_code=201, tags=["drug-tests"])
async def create_test(model: DrugTestCreate, session: Session = Depends(get_session)) -> Dict[str, Any]:
    test = create_drug_test(
        session,
        model.client_id,
        model.test_type,
        model.collection_date,
        model.collection_time,
        model.technician_id,
        model.medications,
    )
    return serialize_drug_test(test)


@app.post("/api/drug-tests/instant", status_code=201, tags=["drug-tests"])
async def create_instant(model: InstantTestCreate, session: Session = Depends(get_session)) -> Dict[str, Any]:
    test = create_instant_test(
        session,
        model.client_id,
        model.test_type,
        model.collection_date,
        model.detected_substances,
        collection_time=model.collection_time,
        technician_id=model.technician_id,
        medications=model.medications,
        breathalyzer_taken=model.breathalyzer_taken,
        breathalyzer_result=model.breathalyzer_result,
        is_dilute=model.is_dilute,
    )
    return serialize_drug_test(test)


@app.get("/api/drug-tests", tags=["drug-tests"])
async def list_tests(
    status: Optional[str] = None,
    client_id: Optional[int] = Query(default=None, alias="clientId"),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    tests = list_drug_tests(session, status=status, client_id=client_id)
    return {"items": [serialize_drug_test(test) for test in tests], "total": len(tests)}


@app.get("/api/drug-tests/{test_id}", tags=["drug-tests"])
async def get_test(test_id: int, session: Session = Depends(get_session)) -> Dict[str, Any]:
    return serialize_drug_test(get_drug_test(session, test_id))


@app.patch("/api/drug-tests/{test_id}", tags=["drug-tests"])
async def reschedule_test(
    test_id: int,
    model: RescheduleRequest,
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    test = reschedule_drug_test(
        session,
        test_id,
        collection_date=model.collection_date,
        collection_time=model.collection_time,
        technician_id=model.technician_id,
    )
    return serialize_drug_test(test)


@app.post("/api/drug-tests/{test_id}/collect", tags=["drug-tests"])
async def collect(
    test_id: int,
    model: Optional[CollectRequest] = None,
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    test = record_collection(session, test_id, technician_id=model.technician_id if model else None)
    return serialize_drug_test(test)


@app.post("/api/drug-tests/{test_id}/screen", tags=["drug-tests"])
async def screen(test_id: int, model: ScreenRequest, session: Session = Depends(get_session)) -> Dict[str, Any]:
    test = record_screen(
        session,
        test_id,
        model.detected_substances,
        breathalyzer_taken=model.breathalyzer_taken,
        breathalyzer_result=model.breathalyzer_result,
        is_dilute=model.is_dilute,
    )
    return serialize_drug_test(test)


@app.post("/api/drug-tests/{test_id}/confirmation-decision", tags=["drug-tests"])
async def confirmation_decision(
    test_id: int,
    model: ConfirmationDecisionRequest,
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    test = record_confirmation_decision(session, test_id, model.decision, model.substances)
    return serialize_drug_test(test)


@app.post("/api/drug-tests/{test_id}/confirmation-results", tags=["drug-tests"])
async def confirmation_results(
    test_id: int,
    model: ConfirmationResultsRequest,
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    test = record_confirmation_results(session, test_id, [item.model_dump() for item in model.results])
    return serialize_drug_test(test)


@app.post("/api/drug-tests/{test_id}/finalize", tags=["drug-tests"])
async def finalize(test_id: int, session: Session = Depends(get_session)) -> Dict[str, Any]:
    return serialize_drug_test(finalize_confirmation(session, test_id))


@app.post("/api/drug-tests/{test_id}/inconclusive", tags=["drug-tests"])
async def inconclusive(
    test_id: int,
    model: Optional[InconclusiveRequest] = None,
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    test = mark_inconclusive(session, test_id, model.reason if model else None)
    return serialize_drug_test(test)


# ---------------------------------------------------------------------------
# Client medications
# ---------------------------------------------------------------------------


@app.get("/api/clients/{client_id}/medications", tags=["clients"])
async def client_medication_list(client_id: int, session: Session = Depends(get_session)) -> Dict[str, Any]:
    records = list_client_medications(session, client_id)
    return {"items": [serialize_medication_record(record) for record in records]}


@app.post("/api/clients/{client_id}/medications", status_code=201, tags=["clients"])
async def client_medication_add(
    client_id: int,
    model: MedicationCreate,
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    record = add_client_medication(session, client_id, model.model_dump(by_alias=True))
    session.commit()
    return serialize_medication_record(record)


@app.patch("/api/clients/{client_id}/medications/{medication_id}", tags=["clients"])
async def client_medication_update(
    client_id: int,
    medication_id: int,
    model: MedicationUpdate,
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    changes = model.model_dump(by_alias=True, exclude_unset=True)
    record = update_client_medication(session, client_id, medication_id, changes)
    session.commit()
    return serialize_medication_record(record)


# ---------------------------------------------------------------------------
# Technicians and schedule
# ---------------------------------------------------------------------------


@app.get("/api/technicians", tags=["schedule"])
async def technicians(session: Session = Depends(get_session)) -> Dict[str, Any]:
    return {
        "items": [serialize_technician(tech) for tech in list_technicians(session)],
        "roster": weekly_roster(session),
    }


@app.get("/api/technicians/on-duty", tags=["schedule"])
async def technician_on_duty(
    on_date: date = Query(alias="date"),
    time_text: Optional[str] = Query(default=None, alias="time"),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    technician = find_technician_on_duty(session, on_date, time_text)
    weekday = day_of_week(on_date)
    return {
        "date": on_date.isoformat(),
        "dayOfWeek": weekday,
        "timeSlot": determine_time_slot(time_text, weekday),
        "technician": serialize_technician(technician),
    }


@app.get("/api/schedule-overrides", tags=["schedule"])
async def schedule_overrides(
    start: Optional[date] = None,
    end: Optional[date] = None,
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    return {"items": [serialize_override(item) for item in list_schedule_overrides(session, start, end)]}


@app.post("/api/schedule-overrides", status_code=201, tags=["schedule"])
async def add_schedule_override(
    model: ScheduleOverrideCreate,
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    override = create_schedule_override(
        session,
        model.on_date,
        model.time_slot,
        model.technician_id,
        model.reason,
    )
    session.commit()
    return serialize_override(override)


# ---------------------------------------------------------------------------
# Admin alerts
# ---------------------------------------------------------------------------


@app.get("/api/admin-alerts", tags=["admin"])
async def admin_alerts(
    unresolved_only: bool = Query(default=True, alias="unresolvedOnly"),
    drug_test_id: Optional[int] = Query(default=None, alias="drugTestId"),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    alerts = list_admin_alerts(session, unresolved_only=unresolved_only, drug_test_id=drug_test_id)
    return {"items": [serialize_admin_alert(alert) for alert in alerts]}


@app.post("/api/admin-alerts/{alert_id}/resolve", tags=["admin"])
async def resolve_alert(alert_id: int, session: Session = Depends(get_session)) -> Dict[str, Any]:
    alert = resolve_admin_alert(session, alert_id)
    session.commit()
    return serialize_admin_alert(alert)


__all__ = ["app", "ErrorDetail", "ErrorResponse"]
