import asyncio
import calendar
import json
import logging
import re
import time
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from bson import ObjectId
from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from audit import list_audit_logs, record_audit
from config import settings
from database import find_by_id, get_db, get_documents, update_document, utcnow
from errors import InvalidTransition, NotFound, ServiceUnavailable, ValidationFailed
from escrow import commission_pct
from routers.auth import create_account
from routers.jobs import change_job_status, company_names
from schemas import ConfigEntry, CreateAdminPayload, DisputeResolution, JobStatusPayload, Role, UserStatus, UserStatusPayload
from security import Identity, require_role
from workflow import CONTRACT_TRANSITIONS, check_transition

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"])

PROTECTED_KEYS = ("commission_pct", "maintenance_mode", "max_file_size_mb")

admin_only = require_role("admin")


def check_maintenance(db: Database = Depends(get_db)) -> None:
    """Reject non-admin API traffic while ``maintenance_mode`` is on."""
    entry = db["adminconfig"].find_one({"key": "maintenance_mode"})
    if entry and str(entry.get("value", "")).lower() == "true":
        raise ServiceUnavailable("Platform is under maintenance. Please try again later.")


def config_error(key: str, value: Any) -> Optional[str]:
    if value is None or value == "":
        return f"{key}: value is required"
    if key == "commission_pct":
        try:
            num = float(value)
        except (TypeError, ValueError):
            num = -1
        if not 0 <= num <= 100:
            return "commission_pct must be a number between 0 and 100"
    if key == "max_file_size_mb":
        try:
            num = float(value)
        except (TypeError, ValueError):
            num = 0
        if num <= 0:
            return "max_file_size_mb must be a positive number"
    if key == "maintenance_mode" and str(value).lower() not in ("true", "false"):
        return "maintenance_mode must be 'true' or 'false'"
    return None


def _config_text(key: str, value: Any) -> str:
    if isinstance(value, bool):
        value = "true" if value else "false"
    text = str(value)
    return text.lower() if key == "maintenance_mode" else text


def put_config(db: Database, key: str, value: Any) -> None:
    db["adminconfig"].update_one(
        {"key": key},
        {"$set": {"value": _config_text(key, value), "updated_at": utcnow()}, "$setOnInsert": {"created_at": utcnow()}},
        upsert=True,
    )


def _count_by(db: Database, collection: str, field: str, values) -> Dict[str, int]:
    return {v: db[collection].count_documents({field: v}) for v in values}


def _total(db: Database, status: str) -> float:
    rows = list(db["contract"].aggregate([
        {"$match": {"status": status}},
        {"$group": {"_id": None, "total": {"$sum": "$total_amount"}}},
    ]))
    return rows[0]["total"] if rows else 0


# ----------------------- Analytics -----------------------

STREAM_INTERVAL_SECONDS = 15


def _recent_months(now: datetime, count: int = 6) -> List[Tuple[int, int]]:
    """(year, month) pairs for the last ``count`` months, oldest first, ending with ``now``'s month."""
    base = now.year * 12 + now.month - 1
    months = []
    for offset in range(count - 1, -1, -1):
        year, index = divmod(base - offset, 12)
        months.append((year, index + 1))
    return months


def _monthly(db: Database, collection: str, since: datetime, value_field: Optional[str] = None) -> Dict[Tuple[int, int], Dict[str, Any]]:
    group: Dict[str, Any] = {
        "_id": {"year": {"$year": "$created_at"}, "month": {"$month": "$created_at"}},
        "count": {"$sum": 1},
    }
    if value_field:
        group["value"] = {"$sum": f"${value_field}"}
    rows = db[collection].aggregate([{"$match": {"created_at": {"$gte": since}}}, {"$group": group}])
    return {(r["_id"]["year"], r["_id"]["month"]): r for r in rows}


def growth_series(db: Database, now: Optional[datetime] = None) -> Dict[str, List[Dict[str, Any]]]:
    months = _recent_months(now or utcnow())
    # Naive bounds are read as UTC by the driver.
    since = datetime(months[0][0], months[0][1], 1)
    users = _monthly(db, "user", since)
    contracts = _monthly(db, "contract", since, value_field="total_amount")
    return {
        "user_growth": [
            {"month": calendar.month_abbr[m], "users": users.get((y, m), {}).get("count", 0)}
            for y, m in months
        ],
        "contract_growth": [
            {
                "month": calendar.month_abbr[m],
                "contracts": contracts.get((y, m), {}).get("count", 0),
                "value": contracts.get((y, m), {}).get("value", 0),
            }
            for y, m in months
        ],
    }


def analytics_snapshot(db: Database) -> Dict[str, Any]:
    return {
        "total_users": db["user"].count_documents({}),
        "open_jobs": db["job"].count_documents({"status": "open"}),
        "active_contracts": db["contract"].count_documents({"status": "active"}),
        "ts": int(time.time() * 1000),
    }


async def snapshot_events(db: Database, request: Request, interval: float = STREAM_INTERVAL_SECONDS) -> AsyncIterator[str]:
    while not await request.is_disconnected():
        try:
            snapshot = await run_in_threadpool(analytics_snapshot, db)
        except PyMongoError:
            logger.warning("Skipping analytics snapshot", exc_info=True)
        else:
            yield f"data: {json.dumps(snapshot)}\n\n"
        await asyncio.sleep(interval)


@router.get("/analytics")
def analytics(identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    paid_out = _total(db, "completed")
    pct = commission_pct(db, settings.platform_commission_pct)
    recent_users = get_documents(db, "user", limit=5, sort=[("created_at", DESCENDING)])
    recent_jobs = get_documents(db, "job", limit=5, sort=[("created_at", DESCENDING)])
    return {
        "total_users": db["user"].count_documents({}),
        "total_developers": db["developer"].count_documents({}),
        "total_employers": db["employer"].count_documents({}),
        "open_jobs": db["job"].count_documents({"status": "open"}),
        "active_contracts": db["contract"].count_documents({"status": "active"}),
        "total_applications": db["application"].count_documents({}),
        "showcase_count": db["showcase"].count_documents({"status": "active"}),
        "total_escrow": _total(db, "active"),
        "total_paid_out": paid_out,
        "total_revenue": round(paid_out * pct / 100, 2),
        **growth_series(db),
        "contracts_by_status": _count_by(db, "contract", "status", ("active", "completed", "cancelled", "disputed")),
        "jobs_by_status": _count_by(db, "job", "status", ("open", "closed", "paused")),
        "jobs_by_type": _count_by(db, "job", "job_type", ("remote", "onsite", "contract")),
        "users_by_role": _count_by(db, "user", "role", ("developer", "employer", "admin")),
        "recent_users": [
            {"id": str(u["_id"]), "email": u["email"], "full_name": u.get("full_name"), "role": u["role"], "created_at": u.get("created_at")}
            for u in recent_users
        ],
        "recent_jobs": [
            {"id": str(j["_id"]), "title": j["title"], "status": j["status"], "created_at": j.get("created_at")}
            for j in recent_jobs
        ],
    }


@router.get("/analytics/stream")
def analytics_stream(request: Request, identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    return StreamingResponse(
        snapshot_events(db, request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ----------------------- Users -----------------------

@router.get("/users")
def list_users(
    role: Optional[Role] = None,
    status: Optional[UserStatus] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(admin_only),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if role:
        query["role"] = role
    if status:
        query["status"] = status
    if search:
        pattern = re.compile(re.escape(search), re.IGNORECASE)
        query["$or"] = [{"email": pattern}, {"full_name": pattern}]
    users = get_documents(db, "user", query, limit=limit, skip=(page - 1) * limit, sort=[("created_at", DESCENDING)])
    return [
        {
            "id": str(u["_id"]),
            "email": u["email"],
            "role": u["role"],
            "full_name": u.get("full_name"),
            "status": u.get("status"),
            "created_at": u.get("created_at"),
        }
        for u in users
    ]


@router.patch("/users/{user_id}/status")
def set_user_status(user_id: str, payload: UserStatusPayload, identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    user = find_by_id(db, "user", user_id, "User")
    update_document(db, "user", user["_id"], {"status": payload.status})
    if payload.status != "active":
        db["refreshtoken"].delete_many({"user_id": user_id})
    record_audit(db, "user_status_update", "user", identity.id, user_id, {"from": user.get("status"), "to": payload.status})
    return {"message": "User status updated"}


@router.delete("/users/{user_id}")
def delete_user(user_id: str, identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    if user_id == identity.id:
        raise ValidationFailed("You cannot delete your own account")
    user = find_by_id(db, "user", user_id, "User")
    db["user"].delete_one({"_id": user["_id"]})
    db["developer"].delete_many({"user_id": user_id})
    db["employer"].delete_many({"user_id": user_id})
    db["showcase"].delete_many({"developer_id": user_id})
    db["refreshtoken"].delete_many({"user_id": user_id})
    record_audit(db, "user_delete", "user", identity.id, user_id, {"email": user["email"], "role": user["role"]})
    return {"message": "User deleted"}


@router.post("/create-admin", status_code=201)
def create_admin(payload: CreateAdminPayload, identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    user_id = create_account(db, payload.email, payload.password, "admin", payload.full_name)
    record_audit(db, "admin_create", "user", identity.id, user_id, {"email": payload.email.lower()})
    return {"id": user_id}


# ----------------------- Employers -----------------------

def _count_per_employer(db: Database, collection: str, employer_ids: List[str]) -> Dict[str, int]:
    rows = db[collection].aggregate([
        {"$match": {"employer_id": {"$in": employer_ids}}},
        {"$group": {"_id": "$employer_id", "count": {"$sum": 1}}},
    ])
    return {r["_id"]: r["count"] for r in rows}


@router.get("/employers")
def list_employers(identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    employers = get_documents(db, "employer", sort=[("created_at", DESCENDING)])
    user_ids = [e["user_id"] for e in employers]
    users = {
        str(u["_id"]): u
        for u in db["user"].find({"_id": {"$in": [ObjectId(uid) for uid in user_ids if ObjectId.is_valid(uid)]}})
    }
    jobs = _count_per_employer(db, "job", user_ids)
    contracts = _count_per_employer(db, "contract", user_ids)

    out = []
    for emp in employers:
        uid = emp["user_id"]
        user = users.get(uid, {})
        out.append({
            "id": str(emp["_id"]),
            "user_id": uid,
            "company_name": emp.get("company_name"),
            "website": emp.get("website"),
            "about": emp.get("about"),
            "location": emp.get("location"),
            "avatar_url": emp.get("avatar_url"),
            "full_name": user.get("full_name", ""),
            "email": user.get("email", ""),
            "user_status": user.get("status", "active"),
            "member_since": user.get("created_at", emp.get("created_at")),
            "job_count": jobs.get(uid, 0),
            "contract_count": contracts.get(uid, 0),
            "created_at": emp.get("created_at"),
        })
    return out


# ----------------------- Jobs -----------------------

@router.get("/jobs")
def list_all_jobs(identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    jobs = get_documents(db, "job", limit=100, sort=[("created_at", DESCENDING)])
    names = company_names(db, [j["employer_id"] for j in jobs])
    return [
        {
            "id": str(j["_id"]),
            "title": j["title"],
            "status": j["status"],
            "company_name": names.get(j["employer_id"]),
            "created_at": j.get("created_at"),
        }
        for j in jobs
    ]


@router.patch("/jobs/{job_id}/status")
def set_job_status(job_id: str, payload: JobStatusPayload, identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    job = find_by_id(db, "job", job_id, "Job")
    change_job_status(db, job, payload.status)
    record_audit(db, "job_status_update", "job", identity.id, job_id, {"from": job["status"], "to": payload.status})
    return {"message": "Job status updated"}


@router.delete("/jobs/{job_id}")
def delete_job(job_id: str, identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    job = find_by_id(db, "job", job_id, "Job")
    db["job"].delete_one({"_id": job["_id"]})
    db["application"].delete_many({"job_id": job_id})
    record_audit(db, "job_delete", "job", identity.id, job_id, {"title": job["title"]})
    return {"message": "Job deleted"}


# ----------------------- Config -----------------------

@router.get("/config")
def get_config(identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    return {c["key"]: c["value"] for c in db["adminconfig"].find()}


@router.patch("/config")
def update_config(payload: ConfigEntry, identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    error = config_error(payload.key, payload.value)
    if error:
        raise ValidationFailed(error, [{"field": payload.key, "message": error}])
    put_config(db, payload.key, payload.value)
    record_audit(db, "config_update", "adminconfig", identity.id, payload.key, {"value": _config_text(payload.key, payload.value)})
    return {"message": "Config updated"}


@router.patch("/config/bulk")
def update_config_bulk(
    updates: Dict[str, Any] = Body(...),
    identity: Identity = Depends(admin_only),
    db: Database = Depends(get_db),
):
    errors: List[Dict[str, str]] = []
    applied: Dict[str, str] = {}
    for key, value in updates.items():
        error = config_error(key, value)
        if error:
            errors.append({"field": key, "message": error})
            continue
        put_config(db, key, value)
        applied[key] = _config_text(key, value)
    if applied:
        record_audit(db, "config_bulk_update", "adminconfig", identity.id, metadata=applied)
    if errors:
        raise ValidationFailed("Some entries failed", errors)
    return {"message": "Config updated"}


@router.delete("/config/{key}")
def delete_config(key: str, identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    if key in PROTECTED_KEYS:
        raise ValidationFailed(f'Config key "{key}" is protected and cannot be deleted')
    result = db["adminconfig"].delete_one({"key": key})
    if result.deleted_count != 1:
        raise NotFound("Config key not found")
    record_audit(db, "config_delete", "adminconfig", identity.id, key)
    return {"message": "Config key deleted"}


# ----------------------- Contracts & disputes -----------------------

@router.get("/disputes")
def list_disputes(identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    contracts = get_documents(db, "contract", {"status": "disputed"}, sort=[("updated_at", DESCENDING)])
    return [
        {
            "id": str(c["_id"]),
            "employer_id": c["employer_id"],
            "developer_id": c["developer_id"],
            "status": c["status"],
            "total_amount": c.get("total_amount", 0),
            "created_at": c.get("created_at"),
        }
        for c in contracts
    ]


@router.post("/disputes/{contract_id}/resolve")
def resolve_dispute(
    contract_id: str,
    payload: DisputeResolution,
    identity: Identity = Depends(admin_only),
    db: Database = Depends(get_db),
):
    contract = find_by_id(db, "contract", contract_id, "Contract")
    if contract["status"] != "disputed":
        raise InvalidTransition("Contract not in dispute")
    target = "completed" if payload.resolution == "release" else "cancelled"
    check_transition("contract", CONTRACT_TRANSITIONS, contract["status"], target)
    if not update_document(db, "contract", contract["_id"], {"status": target}, expected={"status": "disputed"}):
        raise InvalidTransition("Contract not in dispute")
    record_audit(db, "dispute_resolve", "contract", identity.id, contract_id, {"resolution": payload.resolution, "status": target})
    return {"message": "Dispute resolved", "status": target}


@router.get("/contracts")
def list_all_contracts(identity: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    contracts = get_documents(db, "contract", limit=200, sort=[("created_at", DESCENDING)])
    user_ids = {c["employer_id"] for c in contracts} | {c["developer_id"] for c in contracts}
    users = {
        str(u["_id"]): u
        for u in db["user"].find({"_id": {"$in": [ObjectId(uid) for uid in user_ids if ObjectId.is_valid(uid)]}})
    }
    companies = company_names(db, [c["employer_id"] for c in contracts])

    def person(uid: str) -> Dict[str, str]:
        u = users.get(uid, {})
        return {"name": u.get("full_name") or "Unknown", "email": u.get("email", "")}

    out = []
    for c in contracts:
        employer, developer = person(c["employer_id"]), person(c["developer_id"])
        out.append({
            "id": str(c["_id"]),
            "employer_id": c["employer_id"],
            "employer_name": employer["name"],
            "employer_email": employer["email"],
            "employer_company": companies.get(c["employer_id"], ""),
            "developer_id": c["developer_id"],
            "developer_name": developer["name"],
            "developer_email": developer["email"],
            "status": c["status"],
            "total_amount": c.get("total_amount", 0),
            "developer_payment_details": c.get("developer_payment_details"),
            "milestones": c.get("milestones", []),
            "created_at": c.get("created_at"),
        })
    return out


# ----------------------- Audit -----------------------

@router.get("/audit-logs")
def audit_logs(
    entity: Optional[str] = None,
    action: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    identity: Identity = Depends(admin_only),
    db: Database = Depends(get_db),
):
    return list_audit_logs(db, entity=entity, action=action, page=page, limit=limit)
