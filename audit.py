"""Append-only audit trail: entries are written once and never updated or deleted."""

import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, get_documents, serialize
from schemas import AuditLog

logger = logging.getLogger(__name__)


def record_audit(
    db: Database,
    action: str,
    entity: str,
    actor_id: Optional[str] = None,
    entity_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    entry = AuditLog(actor_id=actor_id, action=action, entity=entity, entity_id=entity_id, metadata=metadata or {})
    log_id = create_document(db, "auditlog", entry)
    logger.info("audit %s on %s %s by %s", action, entity, entity_id or "-", actor_id or "system")
    return log_id


def list_audit_logs(
    db: Database,
    entity: Optional[str] = None,
    action: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if entity:
        query["entity"] = entity
    if action:
        query["action"] = action
    logs = get_documents(db, "auditlog", query, limit=limit, sort=[("created_at", DESCENDING), ("_id", DESCENDING)], skip=(page - 1) * limit)

    actor_ids = {l["actor_id"] for l in logs if l.get("actor_id")}
    actors = db["user"].find({"_id": {"$in": [ObjectId(a) for a in actor_ids if ObjectId.is_valid(a)]}}, {"email": 1})
    emails = {str(a["_id"]): a["email"] for a in actors}

    out = []
    for log in logs:
        item = serialize(log, drop=("updated_at",))
        item["actor_email"] = emails.get(log.get("actor_id"))
        out.append(item)
    return out
