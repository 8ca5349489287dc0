from typing import Any, Dict

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.concurrency import run_in_threadpool
from pymongo.database import Database

import media
from database import find_by_id, get_db, to_object_id, utcnow
from errors import NotFound
from schemas import EmployerUpdate
from security import Identity, require_role

router = APIRouter(tags=["employers"])


def employer_view(emp: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": emp["user_id"],
        "full_name": user.get("full_name"),
        "email": user.get("email"),
        "company_name": emp.get("company_name"),
        "website": emp.get("website"),
        "about": emp.get("about"),
        "location": emp.get("location"),
        "avatar_url": emp.get("avatar_url"),
    }


@router.get("")
def list_employers(db: Database = Depends(get_db)):
    employers = list(db["employer"].find())
    ids = [to_object_id(e["user_id"]) for e in employers]
    users = {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": ids}, "status": "active"})}
    return [employer_view(e, users[e["user_id"]]) for e in employers if e["user_id"] in users]


@router.get("/{user_id}")
def get_employer(user_id: str, db: Database = Depends(get_db)):
    emp = db["employer"].find_one({"user_id": user_id})
    if not emp:
        raise NotFound("Employer not found")
    return employer_view(emp, find_by_id(db, "user", user_id, "User"))


@router.patch("/me")
def update_me(payload: EmployerUpdate, identity: Identity = Depends(require_role("employer")), db: Database = Depends(get_db)):
    updates = payload.model_dump(exclude_unset=True, mode="json")
    if updates:
        db["employer"].update_one({"user_id": identity.id}, {"$set": {**updates, "updated_at": utcnow()}})
    return {"message": "Profile updated"}


@router.post("/me/avatar")
async def upload_avatar(
    avatar: UploadFile = File(...),
    identity: Identity = Depends(require_role("employer")),
    db: Database = Depends(get_db),
):
    data = await media.read_upload(avatar, media.IMAGE_OR_PDF)
    result = await run_in_threadpool(media.upload_media, data, "devlink/avatars", "image")
    await run_in_threadpool(
        db["employer"].update_one, {"user_id": identity.id}, {"$set": {"avatar_url": result.secure_url, "updated_at": utcnow()}}
    )
    return {"avatar_url": result.secure_url}
