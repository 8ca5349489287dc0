from typing import Any, Dict

from fastapi import APIRouter, Depends
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from audit import record_audit
from database import create_document, find_by_id, get_db, get_documents, to_object_id, update_document, user_names, utcnow
from errors import Conflict, Forbidden, InvalidTransition, ValidationFailed
from schemas import Application, ApplicationCreate, ApplicationStatusPayload
from security import Identity, require_role
from workflow import APPLICATION_TRANSITIONS, check_transition

router = APIRouter(tags=["applications"])


def application_view(app: Dict[str, Any], **extra) -> Dict[str, Any]:
    return {
        "id": str(app["_id"]),
        "job_id": app["job_id"],
        "developer_id": app["developer_id"],
        "cover_letter": app.get("cover_letter"),
        "status": app["status"],
        "created_at": app.get("created_at"),
        **extra,
    }


@router.post("/{job_id}", status_code=201)
def apply(job_id: str, payload: ApplicationCreate, identity: Identity = Depends(require_role("developer")), db: Database = Depends(get_db)):
    job = find_by_id(db, "job", job_id, "Job")
    if job["status"] != "open":
        raise ValidationFailed("This job is not accepting applications")
    if db["application"].find_one({"job_id": job_id, "developer_id": identity.id}):
        raise Conflict("You have already applied to this job")
    try:
        app_id = create_document(db, "application", Application(job_id=job_id, developer_id=identity.id, cover_letter=payload.cover_letter))
    except DuplicateKeyError:
        raise Conflict("You have already applied to this job")
    return {"id": app_id, "status": "submitted"}


@router.get("/me")
def my_applications(identity: Identity = Depends(require_role("developer")), db: Database = Depends(get_db)):
    apps = get_documents(db, "application", {"developer_id": identity.id}, sort=[("created_at", DESCENDING)])
    titles = {str(j["_id"]): j["title"] for j in db["job"].find({"_id": {"$in": [to_object_id(a["job_id"]) for a in apps]}}, {"title": 1})}
    return [application_view(a, job_title=titles.get(a["job_id"])) for a in apps]


@router.get("/employer/recent")
def recent_for_employer(identity: Identity = Depends(require_role("employer")), db: Database = Depends(get_db)):
    titles = {str(j["_id"]): j["title"] for j in db["job"].find({"employer_id": identity.id}, {"title": 1})}
    apps = get_documents(db, "application", {"job_id": {"$in": list(titles)}}, limit=50, sort=[("created_at", DESCENDING)])
    names = user_names(db, [a["developer_id"] for a in apps])
    return [application_view(a, job_title=titles[a["job_id"]], developer_name=names.get(a["developer_id"])) for a in apps]


@router.get("/job/{job_id}")
def applications_for_job(job_id: str, identity: Identity = Depends(require_role("employer", "admin")), db: Database = Depends(get_db)):
    job = find_by_id(db, "job", job_id, "Job")
    if identity.role != "admin" and job["employer_id"] != identity.id:
        raise Forbidden("Forbidden")
    apps = get_documents(db, "application", {"job_id": job_id}, sort=[("created_at", DESCENDING)])
    names = user_names(db, [a["developer_id"] for a in apps])
    profiles = {d["user_id"]: d for d in db["developer"].find({"user_id": {"$in": [a["developer_id"] for a in apps]}})}
    return [
        application_view(
            a,
            developer_name=names.get(a["developer_id"]),
            skills=profiles.get(a["developer_id"], {}).get("skills", []),
            rating_avg=profiles.get(a["developer_id"], {}).get("rating_avg", 0),
        )
        for a in apps
    ]


@router.patch("/{application_id}/status")
def set_application_status(
    application_id: str,
    payload: ApplicationStatusPayload,
    identity: Identity = Depends(require_role("employer")),
    db: Database = Depends(get_db),
):
    app = find_by_id(db, "application", application_id, "Application")
    job = find_by_id(db, "job", app["job_id"], "Job")
    if job["employer_id"] != identity.id:
        raise Forbidden("Forbidden")

    check_transition("application", APPLICATION_TRANSITIONS, app["status"], payload.status)
    if not update_document(db, "application", app["_id"], {"status": payload.status}, expected={"status": app["status"]}):
        raise InvalidTransition("Application status changed concurrently; reload and retry")

    if payload.status == "accepted":
        # Accepting fills the position: close the job and turn down everyone still in the running.
        db["job"].update_one(
            {"_id": job["_id"], "status": {"$in": ["open", "paused"]}},
            {"$set": {"status": "closed", "updated_at": utcnow()}},
        )
        db["application"].update_many(
            {"job_id": app["job_id"], "_id": {"$ne": app["_id"]}, "status": {"$in": ["submitted", "shortlisted"]}},
            {"$set": {"status": "rejected", "updated_at": utcnow()}},
        )
        record_audit(db, "application_accept", "application", identity.id, application_id, {"job_id": app["job_id"]})
    return {"id": application_id, "status": payload.status}


@router.delete("/{application_id}")
def withdraw(application_id: str, identity: Identity = Depends(require_role("developer")), db: Database = Depends(get_db)):
    app = find_by_id(db, "application", application_id, "Application")
    if app["developer_id"] != identity.id:
        raise Forbidden("Forbidden")
    result = db["application"].delete_one({"_id": app["_id"], "status": "submitted"})
    if result.deleted_count != 1:
        raise InvalidTransition("Only submitted applications can be withdrawn")
    return {"message": "Application withdrawn"}
