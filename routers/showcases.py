import math
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.concurrency import run_in_threadpool
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

import media
from database import create_document, find_by_id, get_db, get_documents, update_document, user_names, utcnow
from errors import Forbidden, NotFound
from schemas import LookingFor, Showcase, ShowcaseCategory, ShowcaseCreate, ShowcaseUpdate
from security import Identity, get_identity, require_role

router = APIRouter(tags=["showcases"])


def showcase_view(showcase: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    return {
        "id": str(showcase["_id"]),
        "developer_id": showcase["developer_id"],
        "title": showcase["title"],
        "tagline": showcase["tagline"],
        "description": showcase["description"],
        "tech_stack": showcase.get("tech_stack", []),
        "project_url": showcase.get("project_url"),
        "repo_url": showcase.get("repo_url"),
        "image_url": showcase.get("image_url"),
        "category": showcase.get("category"),
        "looking_for": showcase.get("looking_for"),
        "status": showcase.get("status"),
        "likes": len(showcase.get("liked_by", [])),
        "created_at": showcase.get("created_at"),
        **extra,
    }


def own_showcase(db: Database, showcase_id: str, identity: Identity) -> Dict[str, Any]:
    showcase = find_by_id(db, "showcase", showcase_id, "Showcase")
    if showcase["developer_id"] != identity.id:
        raise Forbidden("Forbidden")
    return showcase


def developer_cards(db: Database, developer_ids: List[str]) -> Dict[str, Dict[str, Any]]:
    names = user_names(db, developer_ids)
    profiles = {d["user_id"]: d for d in db["developer"].find({"user_id": {"$in": list(set(developer_ids))}})}
    cards = {}
    for uid in set(developer_ids):
        profile = profiles.get(uid, {})
        cards[uid] = {
            "developer_name": names.get(uid) or "Unknown",
            "developer_avatar": profile.get("avatar_url"),
            "developer_rating": profile.get("rating_avg", 0),
        }
    return cards


@router.get("")
def list_showcases(
    category: Optional[ShowcaseCategory] = None,
    looking_for: Optional[LookingFor] = None,
    tech: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {"status": "active"}
    if category:
        query["category"] = category
    if looking_for:
        # "both" matches either audience.
        query["looking_for"] = {"$in": list({looking_for, "both"})}
    if tech:
        query["tech_stack"] = re.compile(re.escape(tech), re.IGNORECASE)
    if search:
        pattern = re.compile(re.escape(search), re.IGNORECASE)
        query["$or"] = [{"title": pattern}, {"tagline": pattern}, {"tech_stack": pattern}]

    total = db["showcase"].count_documents(query)
    showcases = get_documents(db, "showcase", query, limit=limit, skip=(page - 1) * limit, sort=[("created_at", DESCENDING), ("_id", DESCENDING)])
    cards = developer_cards(db, [s["developer_id"] for s in showcases])
    return {
        "showcases": [showcase_view(s, **cards[s["developer_id"]]) for s in showcases],
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit),
    }


@router.get("/me")
def my_showcases(identity: Identity = Depends(require_role("developer")), db: Database = Depends(get_db)):
    showcases = get_documents(db, "showcase", {"developer_id": identity.id}, sort=[("created_at", DESCENDING), ("_id", DESCENDING)])
    return [showcase_view(s) for s in showcases]


@router.get("/{showcase_id}")
def get_showcase(showcase_id: str, db: Database = Depends(get_db)):
    showcase = find_by_id(db, "showcase", showcase_id, "Showcase")
    developer_id = showcase["developer_id"]
    profile = db["developer"].find_one({"user_id": developer_id}) or {}
    return showcase_view(
        showcase,
        **developer_cards(db, [developer_id])[developer_id],
        developer_skills=profile.get("skills", []),
        developer_experience=profile.get("years_experience", 0),
        developer_availability=profile.get("availability", "contract"),
        liked_by=showcase.get("liked_by", []),
    )


@router.post("", status_code=201)
def create_showcase(payload: ShowcaseCreate, identity: Identity = Depends(require_role("developer")), db: Database = Depends(get_db)):
    fields = payload.model_dump(mode="json", exclude_none=True)
    showcase_id = create_document(db, "showcase", Showcase(developer_id=identity.id, **fields))
    return {"id": showcase_id, "message": "Showcase created"}


@router.patch("/{showcase_id}")
def update_showcase(
    showcase_id: str,
    payload: ShowcaseUpdate,
    identity: Identity = Depends(require_role("developer")),
    db: Database = Depends(get_db),
):
    showcase = own_showcase(db, showcase_id, identity)
    updates = payload.model_dump(mode="json", exclude_unset=True)
    if updates:
        update_document(db, "showcase", showcase["_id"], updates)
    return {"message": "Showcase updated"}


@router.delete("/{showcase_id}")
def delete_showcase(showcase_id: str, identity: Identity = Depends(require_role("developer")), db: Database = Depends(get_db)):
    showcase = own_showcase(db, showcase_id, identity)
    db["showcase"].delete_one({"_id": showcase["_id"]})
    return {"message": "Showcase deleted"}


@router.post("/{showcase_id}/like")
def toggle_like(showcase_id: str, identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    showcase = find_by_id(db, "showcase", showcase_id, "Showcase")
    collection = db["showcase"]
    # Push only when absent, otherwise pull.
    updated = collection.find_one_and_update(
        {"_id": showcase["_id"], "liked_by": {"$ne": identity.id}},
        {"$push": {"liked_by": identity.id}},
        return_document=ReturnDocument.AFTER,
    )
    liked = updated is not None
    if not liked:
        updated = collection.find_one_and_update(
            {"_id": showcase["_id"]},
            {"$pull": {"liked_by": identity.id}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise NotFound("Showcase not found")
    return {"likes": len(updated.get("liked_by", [])), "liked": liked}


@router.post("/{showcase_id}/image")
async def upload_image(
    showcase_id: str,
    image: UploadFile = File(...),
    identity: Identity = Depends(require_role("developer")),
    db: Database = Depends(get_db),
):
    showcase = await run_in_threadpool(own_showcase, db, showcase_id, identity)
    data = await media.read_upload(image, media.IMAGE_OR_PDF)
    result = await run_in_threadpool(media.upload_media, data, "devlink/showcases", "image")
    await run_in_threadpool(
        db["showcase"].update_one, {"_id": showcase["_id"]}, {"$set": {"image_url": result.secure_url, "updated_at": utcnow()}}
    )
    return {"image_url": result.secure_url}
