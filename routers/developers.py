import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.concurrency import run_in_threadpool
from pymongo import DESCENDING
from pymongo.database import Database

import media
from database import find_by_id, get_db, get_documents, to_object_id, utcnow
from errors import NotFound
from schemas import Availability, DeveloperUpdate
from security import Identity, require_role

router = APIRouter(tags=["developers"])


def developer_view(dev: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": dev["user_id"],
        "full_name": user.get("full_name"),
        "email": user.get("email"),
        "bio": dev.get("bio"),
        "skills": dev.get("skills", []),
        "years_experience": dev.get("years_experience", 0),
        "portfolio_links": dev.get("portfolio_links", []),
        "github_url": dev.get("github_url"),
        "resume_url": dev.get("resume_url"),
        "avatar_url": dev.get("avatar_url"),
        "availability": dev.get("availability"),
        "rate_type": dev.get("rate_type"),
        "rate_amount": dev.get("rate_amount", 0),
        "rating_avg": dev.get("rating_avg", 0),
        "location": dev.get("location"),
    }


@router.get("")
def list_developers(
    skill: Optional[str] = None,
    availability: Optional[Availability] = None,
    rate_min: Optional[float] = Query(None, ge=0),
    rate_max: Optional[float] = Query(None, ge=0),
    experience: Optional[int] = Query(None, ge=0),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db: Database = Depends(get_db),
):
    inactive = [str(u["_id"]) for u in db["user"].find({"role": "developer", "status": {"$ne": "active"}}, {"_id": 1})]
    dev_filter: Dict[str, Any] = {"user_id": {"$nin": inactive}}
    if skill:
        dev_filter["skills"] = skill
    if availability:
        dev_filter["availability"] = availability
    if rate_min is not None or rate_max is not None:
        rate: Dict[str, float] = {}
        if rate_min is not None:
            rate["$gte"] = rate_min
        if rate_max is not None:
            rate["$lte"] = rate_max
        dev_filter["rate_amount"] = rate
    if experience is not None:
        dev_filter["years_experience"] = {"$gte": experience}
    if search:
        pattern = re.compile(re.escape(search), re.IGNORECASE)
        named = [str(u["_id"]) for u in db["user"].find({"role": "developer", "full_name": pattern}, {"_id": 1})]
        dev_filter["$or"] = [{"user_id": {"$in": named}}, {"skills": pattern}]

    developers = get_documents(
        db, "developer", dev_filter,
        limit=limit, skip=(page - 1) * limit,
        sort=[("rating_avg", DESCENDING), ("years_experience", DESCENDING)],
    )
    users = {
        str(u["_id"]): u
        for u in db["user"].find({"_id": {"$in": [to_object_id(d["user_id"]) for d in developers]}}, {"full_name": 1, "email": 1})
    }
    return [developer_view(d, users.get(d["user_id"], {})) for d in developers]


@router.get("/{user_id}")
def get_developer(user_id: str, db: Database = Depends(get_db)):
    dev = db["developer"].find_one({"user_id": user_id})
    if not dev:
        raise NotFound("Developer not found")
    user = find_by_id(db, "user", user_id, "User")
    return developer_view(dev, user)


@router.patch("/me")
def update_me(payload: DeveloperUpdate, identity: Identity = Depends(require_role("developer")), db: Database = Depends(get_db)):
    updates = payload.model_dump(exclude_unset=True, mode="json")
    if updates:
        db["developer"].update_one({"user_id": identity.id}, {"$set": {**updates, "updated_at": utcnow()}})
    return {"message": "Profile updated"}


async def _upload_to_profile(identity: Identity, db: Database, file: UploadFile, folder: str, resource_type: str, field: str):
    data = await media.read_upload(file, media.IMAGE_OR_PDF)
    result = await run_in_threadpool(media.upload_media, data, folder, resource_type)
    await run_in_threadpool(
        db["developer"].update_one, {"user_id": identity.id}, {"$set": {field: result.secure_url, "updated_at": utcnow()}}
    )
    return {field: result.secure_url}


@router.post("/me/resume")
async def upload_resume(
    resume: UploadFile = File(...),
    identity: Identity = Depends(require_role("developer")),
    db: Database = Depends(get_db),
):
    return await _upload_to_profile(identity, db, resume, "devlink/resumes", "raw", "resume_url")


@router.post("/me/avatar")
async def upload_avatar(
    avatar: UploadFile = File(...),
    identity: Identity = Depends(require_role("developer")),
    db: Database = Depends(get_db),
):
    return await _upload_to_profile(identity, db, avatar, "devlink/avatars", "image", "avatar_url")
