from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.concurrency import run_in_threadpool
from pymongo import DESCENDING
from pymongo.database import Database

import media
from audit import record_audit
from database import create_document, find_by_id, get_db, get_documents, update_document, utcnow
from errors import Conflict, FeatureNotImplemented, Forbidden, InvalidTransition, NotFound, ValidationFailed
from escrow import EscrowLedger, EscrowResult
from schemas import (
    Contract,
    ContractCreate,
    EscrowAmountPayload,
    Milestone,
    MilestoneEdit,
    MilestoneInput,
    MilestoneSubmit,
    PaymentDetails,
    PaymentDetailsPayload,
    TerminatePayload,
)
from security import Identity, get_identity, require_role
from workflow import CONTRACT_TRANSITIONS, MILESTONE_TRANSITIONS, check_transition

router = APIRouter(tags=["contracts"])


def contract_view(contract: Dict[str, Any], with_milestones: bool = False) -> Dict[str, Any]:
    view = {
        "id": str(contract["_id"]),
        "job_id": contract.get("job_id"),
        "employer_id": contract["employer_id"],
        "developer_id": contract["developer_id"],
        "status": contract["status"],
        "total_amount": contract.get("total_amount", 0),
        "developer_payment_details": contract.get("developer_payment_details"),
        "created_at": contract.get("created_at"),
    }
    if with_milestones:
        view["milestones"] = contract.get("milestones", [])
    return view


def load_contract(db: Database, contract_id: str, identity: Identity, side: Optional[str] = None) -> Dict[str, Any]:
    """Fetch a contract the caller belongs to.

    ``side`` narrows the check to ``"employer"`` or ``"developer"``; without it
    either party passes.
    """
    contract = find_by_id(db, "contract", contract_id, "Contract")
    sides = [side] if side else ["employer", "developer"]
    if identity.id not in (contract[f"{s}_id"] for s in sides):
        raise Forbidden("Forbidden")
    return contract


def find_milestone(contract: Dict[str, Any], milestone_id: str) -> Dict[str, Any]:
    for ms in contract.get("milestones", []):
        if ms["id"] == milestone_id:
            return ms
    raise NotFound("Milestone not found")


def save_contract(db: Database, contract: Dict[str, Any], changes: Dict[str, Any]) -> None:
    # Writes are conditional on the version that was read.
    if not update_document(db, "contract", contract["_id"], changes, expected={"updated_at": contract["updated_at"]}):
        raise Conflict("Contract was modified by someone else; reload and retry")


def total_of(milestones: List[Dict[str, Any]]) -> float:
    return round(sum(m["amount"] for m in milestones), 2)


# ----------------------- Contracts -----------------------

@router.post("", status_code=201)
def create_contract(payload: ContractCreate, identity: Identity = Depends(require_role("employer")), db: Database = Depends(get_db)):
    developer = find_by_id(db, "user", payload.developer_id, "Developer")
    if developer["role"] != "developer":
        raise NotFound("Developer not found")
    if payload.job_id:
        job = find_by_id(db, "job", payload.job_id, "Job")
        if job["employer_id"] != identity.id:
            raise Forbidden("Forbidden")
        accepted = db["application"].find_one(
            {"job_id": payload.job_id, "developer_id": payload.developer_id, "status": "accepted"}
        )
        if not accepted:
            raise ValidationFailed("The developer has no accepted application for this job")

    milestones = [Milestone(**m.model_dump()) for m in payload.milestones]
    contract = Contract(
        job_id=payload.job_id,
        employer_id=identity.id,
        developer_id=payload.developer_id,
        total_amount=round(sum(m.amount for m in milestones), 2),
        milestones=milestones,
    )
    contract_id = create_document(db, "contract", contract)
    record_audit(db, "contract_create", "contract", identity.id, contract_id, {
        "developer_id": payload.developer_id,
        "total_amount": contract.total_amount,
        "milestone_count": len(milestones),
    })
    return {"id": contract_id}


@router.get("")
def list_contracts(identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    query: Dict[str, Any] = {}
    if identity.role == "developer":
        query = {"developer_id": identity.id}
    elif identity.role == "employer":
        query = {"employer_id": identity.id}
    limit = 100 if identity.role == "admin" else None
    contracts = get_documents(db, "contract", query, limit=limit, sort=[("created_at", DESCENDING)])
    return [contract_view(c) for c in contracts]


@router.get("/{contract_id}")
def get_contract(contract_id: str, identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    contract = find_by_id(db, "contract", contract_id, "Contract")
    if identity.role != "admin" and identity.id not in (contract["employer_id"], contract["developer_id"]):
        raise Forbidden("Forbidden")
    return contract_view(contract, with_milestones=True)


@router.post("/{contract_id}/payment-details")
def save_payment_details(
    contract_id: str,
    payload: PaymentDetailsPayload,
    identity: Identity = Depends(require_role("developer")),
    db: Database = Depends(get_db),
):
    contract = load_contract(db, contract_id, identity, "developer")
    details = PaymentDetails(
        method=payload.method,
        account_name=(payload.account_name or "").strip(),
        details=payload.details,
        updated_at=utcnow(),
    )
    save_contract(db, contract, {"developer_payment_details": details.model_dump()})
    record_audit(db, "payment_details_update", "contract", identity.id, contract_id, {"method": payload.method})
    return {"message": "Payment details saved"}


@router.post("/{contract_id}/complete")
def complete_contract(contract_id: str, identity: Identity = Depends(require_role("employer")), db: Database = Depends(get_db)):
    contract = load_contract(db, contract_id, identity, "employer")
    if contract["status"] != "active":
        raise InvalidTransition("Contract is not active")
    if not all(m["status"] == "delivered" for m in contract.get("milestones", [])):
        raise ValidationFailed("All milestones must be delivered before completing the contract")
    save_contract(db, contract, {"status": "completed"})
    record_audit(db, "contract_complete", "contract", identity.id, contract_id)
    return {"message": "Contract marked as complete"}


@router.post("/{contract_id}/terminate")
def terminate_contract(
    contract_id: str,
    payload: Optional[TerminatePayload] = None,
    identity: Identity = Depends(require_role("employer")),
    db: Database = Depends(get_db),
):
    contract = load_contract(db, contract_id, identity, "employer")
    check_transition("contract", CONTRACT_TRANSITIONS, contract["status"], "cancelled")
    save_contract(db, contract, {"status": "cancelled"})
    reason = ((payload.reason if payload else None) or "").strip()
    record_audit(db, "contract_terminate", "contract", identity.id, contract_id, {"reason": reason})
    return {"message": "Contract terminated"}


@router.post("/{contract_id}/dispute")
def dispute_contract(contract_id: str, identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    contract = load_contract(db, contract_id, identity)
    check_transition("contract", CONTRACT_TRANSITIONS, contract["status"], "disputed")
    save_contract(db, contract, {"status": "disputed"})
    record_audit(db, "contract_dispute", "contract", identity.id, contract_id)
    return {"message": "Dispute raised. Admin will review."}


# ----------------------- Milestones -----------------------

@router.post("/{contract_id}/milestones", status_code=201)
def add_milestone(
    contract_id: str,
    payload: MilestoneInput,
    identity: Identity = Depends(require_role("employer")),
    db: Database = Depends(get_db),
):
    contract = load_contract(db, contract_id, identity, "employer")
    if contract["status"] != "active":
        raise InvalidTransition("Can only add milestones to an active contract")
    milestone = Milestone(**payload.model_dump())
    milestones = contract.get("milestones", []) + [milestone.model_dump()]
    total = total_of(milestones)
    save_contract(db, contract, {"milestones": milestones, "total_amount": total})
    record_audit(db, "milestone_add", "contract", identity.id, contract_id, {"title": milestone.title, "amount": milestone.amount})
    return {"id": milestone.id, "total_amount": total}


@router.patch("/{contract_id}/milestones/{milestone_id}")
def edit_milestone(
    contract_id: str,
    milestone_id: str,
    payload: MilestoneEdit,
    identity: Identity = Depends(require_role("employer")),
    db: Database = Depends(get_db),
):
    contract = load_contract(db, contract_id, identity, "employer")
    milestone = find_milestone(contract, milestone_id)
    if milestone["status"] != "pending":
        raise InvalidTransition("Only pending milestones can be edited")
    milestone.update(payload.model_dump(exclude_unset=True))
    total = total_of(contract["milestones"])
    save_contract(db, contract, {"milestones": contract["milestones"], "total_amount": total})
    record_audit(db, "milestone_edit", "milestone", identity.id, milestone_id, {"contract_id": contract_id})
    return {"message": "Milestone updated", "total_amount": total}


@router.delete("/{contract_id}/milestones/{milestone_id}")
def delete_milestone(
    contract_id: str,
    milestone_id: str,
    identity: Identity = Depends(require_role("employer")),
    db: Database = Depends(get_db),
):
    contract = load_contract(db, contract_id, identity, "employer")
    milestone = find_milestone(contract, milestone_id)
    if milestone["status"] != "pending":
        raise InvalidTransition("Only pending milestones can be deleted")
    remaining = [m for m in contract["milestones"] if m["id"] != milestone_id]
    total = total_of(remaining)
    save_contract(db, contract, {"milestones": remaining, "total_amount": total})
    record_audit(db, "milestone_delete", "milestone", identity.id, milestone_id, {"contract_id": contract_id})
    return {"message": "Milestone deleted", "total_amount": total}


@router.post("/{contract_id}/milestones/{milestone_id}/submit")
def submit_milestone(
    contract_id: str,
    milestone_id: str,
    payload: MilestoneSubmit,
    identity: Identity = Depends(require_role("developer")),
    db: Database = Depends(get_db),
):
    contract = load_contract(db, contract_id, identity, "developer")
    milestone = find_milestone(contract, milestone_id)
    check_transition("milestone", MILESTONE_TRANSITIONS, milestone["status"], "submitted")
    milestone["status"] = "submitted"
    milestone["submission_link"] = payload.submission_link
    if payload.submission_note and payload.submission_note.strip():
        milestone["submission_note"] = payload.submission_note.strip()
    save_contract(db, contract, {"milestones": contract["milestones"]})
    record_audit(db, "milestone_submit", "milestone", identity.id, milestone_id, {
        "contract_id": contract_id,
        "milestone_title": milestone["title"],
    })
    return {"message": "Work submitted for employer review"}


@router.post("/{contract_id}/milestones/{milestone_id}/release")
def release_milestone(
    contract_id: str,
    milestone_id: str,
    identity: Identity = Depends(require_role("employer")),
    db: Database = Depends(get_db),
):
    contract = load_contract(db, contract_id, identity, "employer")
    milestone = find_milestone(contract, milestone_id)
    check_transition("milestone", MILESTONE_TRANSITIONS, milestone["status"], "released")
    milestone["status"] = "released"
    save_contract(db, contract, {"milestones": contract["milestones"]})
    record_audit(db, "milestone_release", "milestone", identity.id, milestone_id, {
        "contract_id": contract_id,
        "milestone_title": milestone["title"],
    })
    return {"message": "Milestone released. Developer will now submit final deliverables."}


@router.post("/{contract_id}/milestones/{milestone_id}/deliver")
async def deliver_milestone(
    contract_id: str,
    milestone_id: str,
    final_link: str = Form(""),
    delivery_file: Optional[UploadFile] = File(None),
    identity: Identity = Depends(require_role("developer")),
    db: Database = Depends(get_db),
):
    contract = await run_in_threadpool(load_contract, db, contract_id, identity, "developer")
    milestone = find_milestone(contract, milestone_id)
    check_transition("milestone", MILESTONE_TRANSITIONS, milestone["status"], "delivered")
    if not final_link.strip():
        raise ValidationFailed("The official hosted domain/link is required")

    file_url = None
    if delivery_file is not None and delivery_file.filename:
        data = await media.read_upload(delivery_file, media.SUBMISSION)
        result = await run_in_threadpool(
            media.upload_media, data, "deliveries", "raw", f"delivery_{contract_id}_{milestone_id}"
        )
        file_url = result.secure_url

    milestone["status"] = "delivered"
    milestone["final_link"] = final_link.strip()
    if file_url:
        milestone["final_file_url"] = file_url
    await run_in_threadpool(save_contract, db, contract, {"milestones": contract["milestones"]})
    await run_in_threadpool(record_audit, db, "milestone_deliver", "milestone", identity.id, milestone_id, {
        "contract_id": contract_id,
        "milestone_title": milestone["title"],
        "has_file": file_url is not None,
    })
    return {"message": "Final deliverables submitted."}


# ----------------------- Escrow -----------------------

def get_ledger(db: Database = Depends(get_db)) -> EscrowLedger:
    return EscrowLedger(db)


def escrow_response(result: EscrowResult) -> Dict[str, Any]:
    if not result.available:
        raise FeatureNotImplemented(result.reason)
    return {
        "outcome": result.outcome.value,
        "transaction_id": result.transaction_id,
        "commission_id": result.commission_id,
        "reason": result.reason,
    }


@router.post("/{contract_id}/escrow/fund")
def fund_contract_escrow(
    contract_id: str,
    payload: EscrowAmountPayload,
    identity: Identity = Depends(require_role("employer")),
    ledger: EscrowLedger = Depends(get_ledger),
):
    result = ledger.fund(contract_id, payload.amount, identity)
    if result.available:
        record_audit(ledger.db, "escrow_fund", "contract", identity.id, contract_id, {
            "amount": payload.amount,
            "outcome": result.outcome.value,
        })
    return escrow_response(result)


@router.post("/{contract_id}/escrow/refund")
def refund_contract_escrow(
    contract_id: str,
    payload: EscrowAmountPayload,
    identity: Identity = Depends(require_role("employer", "admin")),
    ledger: EscrowLedger = Depends(get_ledger),
):
    result = ledger.refund(contract_id, payload.amount, identity)
    if result.available:
        record_audit(ledger.db, "escrow_refund", "contract", identity.id, contract_id, {
            "amount": payload.amount,
            "outcome": result.outcome.value,
        })
    return escrow_response(result)


@router.post("/{contract_id}/milestones/{milestone_id}/escrow/release")
def release_milestone_escrow(
    contract_id: str,
    milestone_id: str,
    identity: Identity = Depends(require_role("employer")),
    ledger: EscrowLedger = Depends(get_ledger),
):
    result = ledger.release(contract_id, milestone_id, identity)
    if result.available:
        record_audit(ledger.db, "escrow_release", "milestone", identity.id, milestone_id, {
            "contract_id": contract_id,
            "outcome": result.outcome.value,
        })
    return escrow_response(result)
