from fastapi import FastAPI, HTTPException, Depends, Request, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import Optional, List
import os
import sentry_sdk
from supabase import Client
from datetime import datetime, timezone
import uuid
from dotenv import load_dotenv
import pathlib
import time
from contextlib import asynccontextmanager

from .logging_config import (
    setup_logging, log_error, log_api_call,
    ValidationError, MissingField, InvalidUnit, DatabaseError
)
from .validation import (
    optional_text, required_text, to_number, to_bool,
    validate_syns, validate_calories, validate_exercise_duration,
    validate_non_negative, validate_intensity, MAX_TEXT_LENGTH
)
from .units import unit_normalizer, MEASUREMENT_FIELDS
from .connect_keys import ConnectKeyService, extract_connect_key
from .auth import (
    get_db, get_key_service, get_current_user, get_session_user,
    resolve_connect_key, connect_key_ttl
)
from .health import health_checker, metrics_collector
from .rate_limiter import enforce_rate_limit
from .database import SB
from .schemas import (
    CurrentUser, IssueKeyResp, VerifyKeyResp,
    LogWeightReq, LogMealReq, LogExerciseReq, LogMeasurementsReq,
    UserGoalReq, UpdateUserSettingsReq, UpdateFoodValueReq, ResetReq,
    RowsResp, WeightPoint, WeightGraphResp, AuthEchoResp, UserProfileResp
)

# .env lives at the repository root
env_path = pathlib.Path(__file__).parent.parent.parent / '.env'
load_dotenv(dotenv_path=env_path)

logger = setup_logging()

sentry_sdk.init(
    dsn=os.environ.get("SENTRY_DSN"),
    environment=os.environ.get("ENVIRONMENT", "production"),
    traces_sample_rate=0.2,
    send_default_pii=False,
)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    if await SB.ping():
        logger.info("[lifespan] Supabase connection warm OK")
    else:
        logger.warning("[lifespan] Supabase warmup failed; continuing")
    yield
    await SB.dispose()

app = FastAPI(title="SlimBuddy API", version="1.0.0", lifespan=lifespan)

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    logger.info(
        f"Request started: {request.method} {request.url.path}",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None
        }
    )

    try:
        response = await call_next(request)

        execution_time = (time.time() - start_time) * 1000

        metrics_collector.increment_requests()
        if response.status_code >= 400:
            metrics_collector.increment_errors()

        log_api_call(
            logger=logger,
            endpoint=f"{request.method} {request.url.path}",
            user_id=getattr(request.state, "user_id", None),
            execution_time=execution_time,
            status_code=response.status_code
        )

        response.headers["X-Request-ID"] = request_id
        return response

    except Exception as e:
        execution_time = (time.time() - start_time) * 1000

        log_error(logger, e, {
            "request_id": request_id,
            "endpoint": f"{request.method} {request.url.path}",
            "execution_time": execution_time
        })

        raise

ALLOWED_ORIGINS = [o.strip() for o in os.environ.get("ALLOWED_ORIGINS", "*").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials="*" not in ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Connect-Key"],
)

def validation_failed(e: ValidationError, user: CurrentUser, what: str) -> HTTPException:
    logger.warning(f"{what} validation failed: {e.message}", extra={"user_id": user.id, "field": e.field})
    return HTTPException(status_code=422, detail=e.to_detail())

def write_rows(db: Client, table: str, rows, on_conflict: Optional[str] = None) -> List[dict]:
    """Insert (or upsert) and return the stored rows"""
    query = db.table(table)
    query = query.upsert(rows, on_conflict=on_conflict) if on_conflict else query.insert(rows)
    try:
        result = query.execute()
    except Exception as e:
        raise DatabaseError("upsert" if on_conflict else "insert", str(e)) from e
    if not result.data:
        raise DatabaseError("insert", f"no rows returned from {table}")
    return result.data

# Public
@app.get("/api/ping")
async def ping():
    return {"ok": True, "message": "pong"}

# Identity
@app.get("/api/auth_echo", response_model=AuthEchoResp)
async def auth_echo(user: CurrentUser = Depends(get_current_user)):
    return AuthEchoResp(via=user.auth_via, user_id=user.id)

@app.get("/api/user_profile", response_model=UserProfileResp)
async def user_profile(user: CurrentUser = Depends(get_current_user)):
    return UserProfileResp(user_id=user.id, email=user.email)

# Connect keys
@app.post("/api/connect/issue", response_model=IssueKeyResp)
def issue_connect_key(request: Request,
                      user: CurrentUser = Depends(get_session_user),
                      keys: ConnectKeyService = Depends(get_key_service)):
    enforce_rate_limit(request, 'connect_issue', user.id)

    try:
        issued = keys.issue(user.id, connect_key_ttl())
    except DatabaseError as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="failed_to_create_key")

    metrics_collector.record_key_issued()
    return IssueKeyResp(connect_key=issued.plain_key, expires_at=issued.expires_at)

@app.post("/api/connect/verify", response_model=VerifyKeyResp)
def verify_connect_key(request: Request, background_tasks: BackgroundTasks,
                       keys: ConnectKeyService = Depends(get_key_service)):
    enforce_rate_limit(request, 'connect_verify')

    if extract_connect_key(request.headers) is None:
        raise HTTPException(status_code=400, detail="Missing X-Connect-Key (or Authorization: Connect ...)")

    user = resolve_connect_key(request, keys, background_tasks)
    return VerifyKeyResp(user_id=user.id, expires_at=request.state.connect_key_expires_at)

# Logging
@app.post("/api/log_weight", response_model=RowsResp)
def log_weight(req: LogWeightReq, request: Request,
               user: CurrentUser = Depends(get_current_user), db: Client = Depends(get_db)):
    enforce_rate_limit(request, 'write', user.id)

    try:
        entry_date = unit_normalizer.require_date(req.date)
        weight_kg = unit_normalizer.weight_to_kg(req.weight, req.unit, req.stones, req.pounds)

        data = write_rows(db, "weight_logs", {
            "user_id": user.id,
            "date": entry_date,
            "weight_kg": float(weight_kg),
            "unit": req.unit,
            "notes": optional_text(req.notes)
        })

        logger.info(
            "Weight logged successfully",
            extra={"user_id": user.id, "weight_kg": str(weight_kg), "unit": req.unit}
        )
        return RowsResp(message="Weight log saved successfully", data=data)

    except ValidationError as e:
        raise validation_failed(e, user, "Weight")
    except DatabaseError as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Server error inserting weight log")

@app.post("/api/log_meal", response_model=RowsResp)
def log_meal(req: LogMealReq, request: Request,
             user: CurrentUser = Depends(get_current_user), db: Client = Depends(get_db)):
    enforce_rate_limit(request, 'write', user.id)

    try:
        data = write_rows(db, "meal_logs", {
            "user_id": user.id,
            "date": unit_normalizer.require_date(req.date, default_today=True),
            "meal_description": required_text(req.meal_description, "meal_description", MAX_TEXT_LENGTH),
            "syns": validate_syns(req.syns),
            "calories": validate_calories(req.calories),
            "healthy_extra_a_used": req.healthy_extra_a_used,
            "healthy_extra_b_used": req.healthy_extra_b_used,
            "notes": optional_text(req.notes)
        })

        logger.info("Meal logged successfully", extra={"user_id": user.id})
        return RowsResp(message="Meal logged successfully", data=data)

    except ValidationError as e:
        raise validation_failed(e, user, "Meal")
    except DatabaseError as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Database error")

@app.post("/api/log_exercise", response_model=RowsResp)
def log_exercise(req: LogExerciseReq, request: Request,
                 user: CurrentUser = Depends(get_current_user), db: Client = Depends(get_db)):
    enforce_rate_limit(request, 'write', user.id)

    try:
        steps = validate_non_negative(req.steps, "steps")

        data = write_rows(db, "exercise_logs", {
            "user_id": user.id,
            "date": unit_normalizer.require_date(req.date),
            "activity": required_text(req.activity, "activity", 100),
            "duration_minutes": validate_exercise_duration(req.duration_minutes),
            "intensity": validate_intensity(req.intensity),
            "calories_burned": validate_calories(req.calories_burned, "calories_burned"),
            "steps": int(steps) if steps is not None else None,
            "distance_km": validate_non_negative(req.distance_km, "distance_km"),
            "notes": optional_text(req.notes)
        })

        logger.info("Exercise logged successfully", extra={"user_id": user.id})
        return RowsResp(message="Exercise logged successfully", data=data)

    except ValidationError as e:
        raise validation_failed(e, user, "Exercise")
    except DatabaseError as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Database error")

@app.post("/api/log_measurements", response_model=RowsResp, status_code=201)
def log_measurements(req: LogMeasurementsReq, request: Request,
                     user: CurrentUser = Depends(get_current_user), db: Client = Depends(get_db)):
    enforce_rate_limit(request, 'write', user.id)

    try:
        entry_date = unit_normalizer.require_date(req.date)
        measurements = unit_normalizer.measurements_to_cm(req.model_dump(), from_inches=req.unit == "in")
        if all(value is None for value in measurements.values()):
            raise MissingField("measurements", f"At least one of {', '.join(MEASUREMENT_FIELDS)} is required.")

        row = {"user_id": user.id, "date": entry_date, "notes": optional_text(req.notes)}
        row.update({name: float(value) if value is not None else None for name, value in measurements.items()})

        data = write_rows(db, "body_measurements", row)

        logger.info("Measurements logged successfully", extra={"user_id": user.id, "unit": req.unit})
        return RowsResp(message="Measurements logged successfully", data=data)

    except ValidationError as e:
        raise validation_failed(e, user, "Measurements")
    except DatabaseError as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Database error")

# Goals, settings, food values
@app.post("/api/user_goals", response_model=RowsResp)
def user_goals(req: UserGoalReq, request: Request,
               user: CurrentUser = Depends(get_current_user), db: Client = Depends(get_db)):
    enforce_rate_limit(request, 'write', user.id)

    try:
        goal_type = required_text(req.goal_type, "goal_type", 100)
        target_kg = unit_normalizer.weight_to_kg(
            req.target_value, req.unit, req.stones, req.pounds, field="target_value"
        )

        data = write_rows(db, "user_goals", {
            "user_id": user.id,
            "goal_type": goal_type,
            "target_value": float(target_kg),
            "target_date": unit_normalizer.optional_date(req.target_date, "target_date")
        })

        logger.info("User goal logged successfully", extra={"user_id": user.id, "goal_type": goal_type})
        return RowsResp(message="User goal logged successfully", data=data)

    except ValidationError as e:
        raise validation_failed(e, user, "Goal")
    except DatabaseError as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Database error")

SETTINGS_TEXT_FIELDS = (
    "preferred_name", "tone", "diet_preference", "food_allergies",
    "food_dislikes", "typical_day", "healthy_extra_a", "healthy_extra_b",
)

def settings_updates(req: UpdateUserSettingsReq) -> dict:
    """Cast only the fields present in the PATCH body"""
    provided = req.model_dump(exclude_unset=True)
    weight_unit = provided.pop("target_weight_unit", "kg")

    updates = {}
    for name, value in provided.items():
        if name in SETTINGS_TEXT_FIELDS:
            updates[name] = optional_text(value)
        elif name == "preferred_weight_unit":
            updates[name] = value
        elif name == "syn_limit":
            updates[name] = validate_non_negative(value, name)
        elif name == "maintenance_mode_enabled":
            updates[name] = to_bool(value)
        elif name == "target_weight":
            if to_number(value) is None:
                updates[name] = None
            elif weight_unit not in ("kg", "lbs"):
                raise InvalidUnit(weight_unit, ("kg", "lbs"), "target_weight_unit")
            else:
                updates[name] = float(unit_normalizer.weight_to_kg(value, weight_unit, field="target_weight"))
    return updates

@app.patch("/api/update_user_settings", response_model=RowsResp)
def update_user_settings(req: UpdateUserSettingsReq, request: Request,
                         user: CurrentUser = Depends(get_current_user), db: Client = Depends(get_db)):
    enforce_rate_limit(request, 'write', user.id)

    try:
        updates = settings_updates(req)
        if not updates:
            raise HTTPException(status_code=400, detail="No valid fields provided.")

        updates.update({"user_id": user.id, "updated_at": datetime.now(timezone.utc).isoformat()})
        data = write_rows(db, "user_settings", updates, on_conflict="user_id")

        logger.info("User settings saved", extra={"user_id": user.id, "fields": sorted(updates)})
        return RowsResp(message="User settings saved", data=data)

    except ValidationError as e:
        raise validation_failed(e, user, "Settings")
    except DatabaseError as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Database error")

@app.post("/api/update_food_value", response_model=RowsResp)
def update_food_value(req: UpdateFoodValueReq, request: Request,
                      user: CurrentUser = Depends(get_current_user), db: Client = Depends(get_db)):
    enforce_rate_limit(request, 'write', user.id)

    try:
        data = write_rows(db, "syn_values", {
            "user_id": user.id,
            "food_name": required_text(req.food_name, "food_name"),
            "syn_value": validate_syns(req.syns),
            "date": unit_normalizer.require_date(req.date, default_today=True),
            "notes": optional_text(req.notes)
        }, on_conflict="user_id,food_name,date")

        return RowsResp(message="Syn value logged successfully", data=data)

    except ValidationError as e:
        raise validation_failed(e, user, "Food value")
    except DatabaseError as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Database error")

# Retrieval
@app.get("/api/weight_graph", response_model=WeightGraphResp)
def weight_graph(start: Optional[str] = None, end: Optional[str] = None,
                 user: CurrentUser = Depends(get_current_user), db: Client = Depends(get_db)):
    try:
        start_date = unit_normalizer.optional_date(start, "start")
        end_date = unit_normalizer.optional_date(end, "end")
    except ValidationError as e:
        raise validation_failed(e, user, "Weight graph")

    query = (db.table("weight_logs")
             .select("date, weight_kg")
             .eq("user_id", user.id)
             .order("date"))
    if start_date:
        query = query.gte("date", start_date)
    if end_date:
        query = query.lte("date", end_date)

    try:
        result = query.execute()
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Internal server error")

    points = [WeightPoint(date=row["date"], weight_kg=row["weight_kg"]) for row in result.data or []]
    return WeightGraphResp(user_id=user.id, data=points)

# Account
@app.post("/api/reset")
def reset_my_data(req: ResetReq, user: CurrentUser = Depends(get_current_user), db: Client = Depends(get_db)):
    """Delete all of the caller's data; requires {"confirm": "RESET"}"""
    if req.confirm != "RESET":
        return JSONResponse(status_code=400, content={
            "ok": False,
            "error": 'Confirmation required. Send { "confirm": "RESET" } to proceed.'
        })

    try:
        db.rpc("reset_my_data", {"p_user_id": user.id}).execute()
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        return JSONResponse(status_code=500, content={"ok": False, "error": "Reset failed. Try again shortly."})

    logger.info("User data reset", extra={"user_id": user.id})
    return {"ok": True, "message": "Your data has been cleared. You can run onboarding again now."}

# Health
@app.get("/health")
async def health():
    """Lightweight health check against the database"""
    ok = await SB.ping()
    body = {
        "status": "healthy" if ok else "unhealthy",
        "database": "connected" if ok else "disconnected",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    return body if ok else JSONResponse(status_code=503, content=body)

@app.get("/health/quick")
async def health_quick():
    """Quick health check for load balancer"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": metrics_collector.get_metrics()["uptime_human"]
    }

@app.get("/health/detailed")
async def health_detailed():
    report = await health_checker.run_all_checks()
    return report if report["status"] == "healthy" else JSONResponse(status_code=503, content=report)

@app.get("/metrics")
async def metrics():
    """Application metrics endpoint"""
    return metrics_collector.get_metrics()
