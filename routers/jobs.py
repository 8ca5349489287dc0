import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, find_by_id, get_db, get_documents, update_document
from errors import Forbidden, InvalidTransition, ValidationFailed
from schemas import ExperienceLevel, Job, JobCreate, JobStatusPayload, JobType, JobUpdate
from security import Identity, require_role
from workflow import JOB_TRANSITIONS, check_transition

router = APIRouter(tags=["jobs"])


def company_names(db: Database, employer_ids) -> Dict[str, str]:
    employers = db["employer"].find({"user_id": {"$in": list(set(employer_ids))}}, {"user_id": 1, "company_name": 1})
    return {e["user_id"]: e["company_name"] for e in employers}


def job_view(job: Dict[str, Any], company_name: str = "") -> Dict[str, Any]:
    return {
        "id": str(job["_id"]),
        "employer_id": job["employer_id"],
        "company_name": company_name,
        "title": job["title"],
        "description": job["description"],
        "required_skills": job.get("required_skills", []),
        "experience_level": job.get("experience_level"),
        "budget_min": job.get("budget_min"),
        "budget_max": job.get("budget_max"),
        "rate_type": job.get("rate_type"),
        "job_type": job.get("job_type"),
        "location": job.get("location"),
        "status": job["status"],
        "created_at": job.get("created_at"),
    }


def owned_job(db: Database, job_id: str, identity: Identity) -> Dict[str, Any]:
    """Load a job the caller may manage: its employer, or any admin."""
    job = find_by_id(db, "job", job_id, "Job")
    if identity.role != "admin" and job["employer_id"] != identity.id:
        raise Forbidden("Forbidden")
    return job


def change_job_status(db: Database, job: Dict[str, Any], target: str) -> None:
    check_transition("job", JOB_TRANSITIONS, job["status"], target)
    if not update_document(db, "job", job["_id"], {"status": target}, expected={"status": job["status"]}):
        raise InvalidTransition("Job status changed concurrently; reload and retry")


@router.get("")
def list_jobs(
    skill: Optional[str] = None,
    experience: Optional[ExperienceLevel] = None,
    job_type: Optional[JobType] = None,
    budget_min: Optional[float] = Query(None, ge=0),
    budget_max: Optional[float] = Query(None, ge=0),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {"status": "open"}
    if skill:
        query["required_skills"] = skill
    if experience:
        query["experience_level"] = experience
    if job_type:
        query["job_type"] = job_type
    if budget_min is not None or budget_max is not None:
        budget: Dict[str, float] = {}
        if budget_min is not None:
            budget["$gte"] = budget_min
        if budget_max is not None:
            budget["$lte"] = budget_max
        query["budget_min"] = budget
    if search:
        pattern = re.compile(re.escape(search), re.IGNORECASE)
        query["$or"] = [{"title": pattern}, {"description": pattern}]

    jobs = get_documents(db, "job", query, limit=limit, skip=(page - 1) * limit, sort=[("created_at", DESCENDING)])
    names = company_names(db, [j["employer_id"] for j in jobs])
    return [job_view(j, names.get(j["employer_id"], "")) for j in jobs]


@router.get("/employer/{employer_id}")
def list_employer_jobs(employer_id: str, db: Database = Depends(get_db)):
    jobs = get_documents(db, "job", {"employer_id": employer_id}, sort=[("created_at", DESCENDING)])
    return [{"id": str(j["_id"]), "title": j["title"], "status": j["status"], "created_at": j.get("created_at")} for j in jobs]


@router.get("/{job_id}")
def get_job(job_id: str, db: Database = Depends(get_db)):
    job = find_by_id(db, "job", job_id, "Job")
    return job_view(job, company_names(db, [job["employer_id"]]).get(job["employer_id"], ""))


@router.post("", status_code=201)
def create_job(payload: JobCreate, identity: Identity = Depends(require_role("employer")), db: Database = Depends(get_db)):
    fields = payload.model_dump(exclude_none=True)
    job_id = create_document(db, "job", Job(employer_id=identity.id, **fields))
    return {"id": job_id}


@router.patch("/{job_id}")
def update_job(job_id: str, payload: JobUpdate, identity: Identity = Depends(require_role("employer")), db: Database = Depends(get_db)):
    job = owned_job(db, job_id, identity)
    updates = payload.model_dump(exclude_unset=True)
    low = updates.get("budget_min", job.get("budget_min"))
    high = updates.get("budget_max", job.get("budget_max"))
    if low is not None and high is not None and low > high:
        raise ValidationFailed("budget_min must not exceed budget_max")
    if updates:
        update_document(db, "job", job["_id"], updates)
    return {"message": "Job updated"}


@router.post("/{job_id}/close")
def close_job(job_id: str, identity: Identity = Depends(require_role("employer")), db: Database = Depends(get_db)):
    change_job_status(db, owned_job(db, job_id, identity), "closed")
    return {"message": "Job closed"}


@router.patch("/{job_id}/status")
def set_job_status(
    job_id: str,
    payload: JobStatusPayload,
    identity: Identity = Depends(require_role("employer", "admin")),
    db: Database = Depends(get_db),
):
    change_job_status(db, owned_job(db, job_id, identity), payload.status)
    return {"message": "Job status updated"}


@router.delete("/{job_id}")
def delete_job(job_id: str, identity: Identity = Depends(require_role("employer", "admin")), db: Database = Depends(get_db)):
    job = owned_job(db, job_id, identity)
    db["job"].delete_one({"_id": job["_id"]})
    db["application"].delete_many({"job_id": job_id})
    return {"message": "Job deleted"}
