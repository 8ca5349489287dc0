from typing import Any, Dict

from fastapi import APIRouter, Depends
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, find_by_id, get_db, get_documents, user_names, utcnow
from errors import Forbidden, NotFound
from schemas import Message, MessageCreate, ReplyCreate
from security import Identity, get_identity
from workflow import canonical_pair, counterpart, pair_key

router = APIRouter(tags=["messages"])


def find_or_create_conversation(db: Database, a: str, b: str) -> Dict[str, Any]:
    """Return the single conversation between two users, creating it on first contact."""
    first, second = canonical_pair(a, b)
    key = pair_key(first, second)
    now = utcnow()
    try:
        return db["conversation"].find_one_and_update(
            {"pair_key": key},
            {"$setOnInsert": {
                "participant_a": first,
                "participant_b": second,
                "pair_key": key,
                "created_at": now,
                "updated_at": now,
            }},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        # Two first messages raced; the other request created it.
        return db["conversation"].find_one({"pair_key": key})


def participant_conversation(db: Database, conversation_id: str, identity: Identity) -> Dict[str, Any]:
    conv = find_by_id(db, "conversation", conversation_id, "Conversation")
    if identity.id not in (conv["participant_a"], conv["participant_b"]):
        raise Forbidden("Forbidden")
    return conv


def append_message(db: Database, conv: Dict[str, Any], sender_id: str, body: str) -> Dict[str, str]:
    recipient_id = counterpart(conv, sender_id)
    message = Message(conversation_id=str(conv["_id"]), sender_id=sender_id, recipient_id=recipient_id, body=body)
    message_id = create_document(db, "message", message)
    return {"id": message_id, "conversation_id": str(conv["_id"])}


def conversation_messages(db: Database, conversation_id: str):
    messages = get_documents(
        db, "message", {"conversation_id": conversation_id},
        sort=[("created_at", ASCENDING), ("_id", ASCENDING)],
    )
    names = user_names(db, [m["sender_id"] for m in messages])
    return [
        {
            "id": str(m["_id"]),
            "sender_id": m["sender_id"],
            "sender_name": names.get(m["sender_id"]),
            "recipient_id": m["recipient_id"],
            "body": m["body"],
            "created_at": m.get("created_at"),
        }
        for m in messages
    ]


@router.post("", status_code=201)
def send_message(payload: MessageCreate, identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    canonical_pair(identity.id, payload.recipient_id)
    find_by_id(db, "user", payload.recipient_id, "Recipient")
    conv = find_or_create_conversation(db, identity.id, payload.recipient_id)
    return append_message(db, conv, identity.id, payload.body)


@router.post("/conversations/{conversation_id}", status_code=201)
def reply(conversation_id: str, payload: ReplyCreate, identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    conv = participant_conversation(db, conversation_id, identity)
    return append_message(db, conv, identity.id, payload.body)


@router.get("/conversations")
def list_conversations(identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    convs = get_documents(
        db, "conversation",
        {"$or": [{"participant_a": identity.id}, {"participant_b": identity.id}]},
        sort=[("created_at", DESCENDING)],
    )
    others = [counterpart(c, identity.id) for c in convs]
    names = user_names(db, others)
    return [
        {"id": str(c["_id"]), "other_user_id": other, "other_user_name": names.get(other)}
        for c, other in zip(convs, others)
    ]


@router.get("/conversations/with/{user_id}")
def conversation_with(user_id: str, identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    conv = db["conversation"].find_one({"pair_key": pair_key(identity.id, user_id)})
    if not conv:
        raise NotFound("Conversation not found")
    return {
        "id": str(conv["_id"]),
        "other_user_id": user_id,
        "messages": conversation_messages(db, str(conv["_id"])),
    }


@router.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: str, identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    participant_conversation(db, conversation_id, identity)
    return conversation_messages(db, conversation_id)
