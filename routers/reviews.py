from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, find_by_id, get_db, get_documents, user_names, utcnow
from errors import Conflict, Forbidden, ValidationFailed
from schemas import Review, ReviewCreate
from security import Identity, get_identity

router = APIRouter(tags=["reviews"])


def refresh_rating(db: Database, user_id: str) -> float:
    """Recompute a developer's ``rating_avg`` from every review they received."""
    rows = list(db["review"].aggregate([
        {"$match": {"reviewee_id": user_id}},
        {"$group": {"_id": None, "avg": {"$avg": "$rating"}}},
    ]))
    avg = round(rows[0]["avg"], 1) if rows else 0
    db["developer"].update_one({"user_id": user_id}, {"$set": {"rating_avg": avg, "updated_at": utcnow()}})
    return avg


def review_list(db: Database, reviews: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    names = user_names(db, [r["reviewer_id"] for r in reviews])
    return [
        {
            "id": str(r["_id"]),
            "contract_id": r["contract_id"],
            "reviewer_id": r["reviewer_id"],
            "reviewer_name": names.get(r["reviewer_id"]),
            "rating": r["rating"],
            "comment": r.get("comment"),
            "created_at": r.get("created_at"),
        }
        for r in reviews
    ]


@router.post("", status_code=201)
def create_review(payload: ReviewCreate, identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    contract = find_by_id(db, "contract", payload.contract_id, "Contract")
    parties = (contract["employer_id"], contract["developer_id"])
    if identity.id not in parties:
        raise Forbidden("Forbidden")
    if contract["status"] != "completed":
        raise ValidationFailed("Contract not completed")
    other = parties[1] if identity.id == parties[0] else parties[0]
    if payload.reviewee_id != other:
        raise ValidationFailed("You can only review the other party of the contract")

    if db["review"].find_one({"contract_id": payload.contract_id, "reviewer_id": identity.id}):
        raise Conflict("You have already reviewed this contract")
    review = Review(
        contract_id=payload.contract_id,
        reviewer_id=identity.id,
        reviewee_id=payload.reviewee_id,
        rating=payload.rating,
        comment=payload.comment,
    )
    try:
        review_id = create_document(db, "review", review)
    except DuplicateKeyError:
        raise Conflict("You have already reviewed this contract")

    rating_avg = refresh_rating(db, payload.reviewee_id)
    return {"id": review_id, "rating_avg": rating_avg}


@router.get("/me")
def my_reviews(identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    reviews = get_documents(db, "review", {"reviewee_id": identity.id}, sort=[("created_at", DESCENDING)])
    return review_list(db, reviews)


@router.get("/user/{user_id}")
def reviews_for_user(user_id: str, db: Database = Depends(get_db)):
    reviews = get_documents(db, "review", {"reviewee_id": user_id}, sort=[("created_at", DESCENDING)])
    return review_list(db, reviews)
