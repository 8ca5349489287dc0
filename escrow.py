"""Escrow ledger.

Every money movement follows the same three steps: record a ``pending``
EscrowTransaction, ask the settlement gateway to move the funds (the
transaction id is the idempotency key), then mark the record ``completed`` or
``failed``. A crash between the steps leaves the record ``pending`` and
``EscrowLedger.retry`` settles it later.

No settlement gateway ships with this release, so every entry point answers
``EscrowOutcome.UNAVAILABLE`` without touching the store.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from pymongo.database import Database

from config import settings
from database import create_document, find_by_id, update_document, utcnow
from errors import Conflict, Forbidden, NotFound, ValidationFailed
from schemas import EscrowTransaction
from security import Identity

logger = logging.getLogger(__name__)

UNAVAILABLE_REASON = "Escrow payments are not yet available."


class EscrowOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class EscrowResult:
    outcome: EscrowOutcome
    transaction_id: Optional[str] = None
    commission_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.outcome is not EscrowOutcome.UNAVAILABLE


UNAVAILABLE = EscrowResult(EscrowOutcome.UNAVAILABLE, reason=UNAVAILABLE_REASON)


class SettlementError(Exception):
    """Raised by a gateway when the payment provider declines a movement."""


class SettlementGateway(Protocol):
    def settle(self, transaction_id: str, kind: str, amount: float, metadata: Dict[str, Any]) -> None:
        ...


def commission_pct(db: Database, default: float) -> float:
    entry = db["adminconfig"].find_one({"key": "commission_pct"})
    if entry is None:
        return default
    try:
        return float(entry["value"])
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed commission_pct %r", entry.get("value"))
        return default


class EscrowLedger:
    def __init__(
        self,
        db: Database,
        gateway: Optional[SettlementGateway] = None,
        default_commission_pct: Optional[float] = None,
    ):
        self.db = db
        self.gateway = gateway
        if default_commission_pct is None:
            default_commission_pct = settings.platform_commission_pct
        self.default_commission_pct = default_commission_pct

    # ----------------------- Entry points -----------------------

    def fund(self, contract_id: str, amount: float, actor: Identity) -> EscrowResult:
        if self.gateway is None:
            return UNAVAILABLE
        self._positive(amount)
        contract = self._contract(contract_id)
        if contract["employer_id"] != actor.id:
            raise Forbidden("Only the contract employer can fund escrow")
        if contract["status"] != "active":
            raise ValidationFailed("Only active contracts can be funded")
        return self._execute(contract_id, "fund", amount, {"actor_id": actor.id})

    def release(self, contract_id: str, milestone_id: str, actor: Identity) -> EscrowResult:
        if self.gateway is None:
            return UNAVAILABLE
        contract = self._contract(contract_id)
        if contract["employer_id"] != actor.id:
            raise Forbidden("Only the contract employer can release funds")
        milestone = next((m for m in contract.get("milestones", []) if m["id"] == milestone_id), None)
        if milestone is None:
            raise NotFound("Milestone not found")
        paid = self.db["escrowtransaction"].find_one({
            "contract_id": contract_id,
            "milestone_id": milestone_id,
            "type": "release",
            "status": {"$in": ["pending", "completed"]},
        })
        if paid:
            raise Conflict("Milestone funds were already released")

        gross = float(milestone["amount"])
        if gross > self.balance(contract_id):
            raise ValidationFailed("Insufficient escrow balance")
        pct = commission_pct(self.db, self.default_commission_pct)
        commission = round(gross * pct / 100, 2)
        metadata = {"actor_id": actor.id, "gross_amount": gross, "commission": commission, "commission_pct": pct}
        result = self._execute(contract_id, "release", round(gross - commission, 2), metadata, milestone_id)
        if result.outcome is not EscrowOutcome.COMPLETED or commission <= 0:
            return result

        fee = EscrowTransaction(
            contract_id=contract_id,
            milestone_id=milestone_id,
            type="commission",
            amount=commission,
            status="completed",
            metadata={"release_transaction_id": result.transaction_id, "commission_pct": pct},
        )
        commission_id = create_document(self.db, "escrowtransaction", fee)
        return EscrowResult(EscrowOutcome.COMPLETED, transaction_id=result.transaction_id, commission_id=commission_id)

    def refund(self, contract_id: str, amount: float, actor: Identity) -> EscrowResult:
        if self.gateway is None:
            return UNAVAILABLE
        self._positive(amount)
        contract = self._contract(contract_id)
        if actor.role != "admin" and contract["employer_id"] != actor.id:
            raise Forbidden("Forbidden")
        if amount > self.balance(contract_id):
            raise ValidationFailed("Refund exceeds the escrow balance")
        return self._execute(contract_id, "refund", amount, {"actor_id": actor.id})

    def retry(self, transaction_id: str) -> EscrowResult:
        """Settle a transaction left ``pending``; settled ones are returned untouched."""
        if self.gateway is None:
            return UNAVAILABLE
        txn = find_by_id(self.db, "escrowtransaction", transaction_id, "Transaction")
        if txn["status"] != "pending":
            return EscrowResult(EscrowOutcome(txn["status"]), transaction_id=transaction_id)
        return self._settle(transaction_id, txn["type"], txn["amount"], txn.get("metadata", {}))

    def balance(self, contract_id: str) -> float:
        """Funds held for a contract; pending outflows count as already spent."""
        held = 0.0
        for txn in self.db["escrowtransaction"].find({"contract_id": contract_id}):
            if txn["type"] == "fund" and txn["status"] == "completed":
                held += txn["amount"]
            elif txn["type"] == "release" and txn["status"] != "failed":
                held -= txn.get("metadata", {}).get("gross_amount", txn["amount"])
            elif txn["type"] == "refund" and txn["status"] != "failed":
                held -= txn["amount"]
        return round(held, 2)

    # ----------------------- Internals -----------------------

    def _contract(self, contract_id: str) -> Dict[str, Any]:
        return find_by_id(self.db, "contract", contract_id, "Contract")

    @staticmethod
    def _positive(amount: float) -> None:
        if amount is None or amount <= 0:
            raise ValidationFailed("Amount must be a positive number")

    def _execute(
        self,
        contract_id: str,
        kind: str,
        amount: float,
        metadata: Dict[str, Any],
        milestone_id: Optional[str] = None,
    ) -> EscrowResult:
        txn = EscrowTransaction(
            contract_id=contract_id,
            milestone_id=milestone_id,
            type=kind,
            amount=amount,
            metadata=metadata,
        )
        txn_id = create_document(self.db, "escrowtransaction", txn)
        return self._settle(txn_id, kind, amount, metadata)

    def _settle(self, txn_id: str, kind: str, amount: float, metadata: Dict[str, Any]) -> EscrowResult:
        try:
            self.gateway.settle(txn_id, kind, amount, metadata)
        except SettlementError as exc:
            logger.warning("Escrow %s %s failed: %s", kind, txn_id, exc)
            update_document(
                self.db, "escrowtransaction", txn_id,
                {"status": "failed", "metadata.failure": str(exc), "metadata.settled_at": utcnow()},
                expected={"status": "pending"},
            )
            return EscrowResult(EscrowOutcome.FAILED, transaction_id=txn_id, reason=str(exc))

        update_document(
            self.db, "escrowtransaction", txn_id,
            {"status": "completed", "metadata.settled_at": utcnow()},
            expected={"status": "pending"},
        )
        logger.info("Escrow %s %s completed (%.2f)", kind, txn_id, amount)
        return EscrowResult(EscrowOutcome.COMPLETED, transaction_id=txn_id)


def fund_escrow(db: Database, contract_id: str, amount: float, actor: Identity,
                gateway: Optional[SettlementGateway] = None) -> EscrowResult:
    return EscrowLedger(db, gateway).fund(contract_id, amount, actor)


def release_milestone(db: Database, contract_id: str, milestone_id: str, actor: Identity,
                      gateway: Optional[SettlementGateway] = None) -> EscrowResult:
    return EscrowLedger(db, gateway).release(contract_id, milestone_id, actor)


def refund_escrow(db: Database, contract_id: str, amount: float, actor: Identity,
                  gateway: Optional[SettlementGateway] = None) -> EscrowResult:
    return EscrowLedger(db, gateway).refund(contract_id, amount, actor)
