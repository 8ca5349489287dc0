"""Escrow ledger: unavailable by default, and the settlement algorithm behind a gateway."""

import pytest

from database import create_document
from errors import Conflict, Forbidden, ValidationFailed
from escrow import (
    UNAVAILABLE_REASON,
    EscrowLedger,
    EscrowOutcome,
    SettlementError,
    fund_escrow,
    refund_escrow,
    release_milestone,
)
from main import app
from routers.contracts import get_ledger
from schemas import Contract, EscrowTransaction, Milestone
from security import Identity


class RecordingGateway:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def settle(self, transaction_id, kind, amount, metadata):
        self.calls.append((transaction_id, kind, amount))
        if self.fail:
            raise SettlementError("card declined")


EMPLOYER = Identity(id="employer-1", role="employer")
DEVELOPER = Identity(id="developer-1", role="developer")


@pytest.fixture
def contract_id(db):
    contract = Contract(
        employer_id=EMPLOYER.id,
        developer_id=DEVELOPER.id,
        total_amount=300,
        milestones=[Milestone(id="ms-1", title="Build", amount=100), Milestone(id="ms-2", title="Ship", amount=200)],
    )
    return create_document(db, "contract", contract)


class TestUnavailable:
    def test_entry_points_report_unavailable(self, db, contract_id):
        results = [
            fund_escrow(db, contract_id, 100, EMPLOYER),
            release_milestone(db, contract_id, "ms-1", EMPLOYER),
            refund_escrow(db, contract_id, 50, EMPLOYER),
            EscrowLedger(db).retry("whatever"),
        ]
        for result in results:
            assert result.outcome is EscrowOutcome.UNAVAILABLE
            assert not result.available
            assert result.reason == UNAVAILABLE_REASON
        assert db["escrowtransaction"].count_documents({}) == 0

    def test_arguments_do_not_matter(self, db):
        result = fund_escrow(db, "no-such-contract", -5, DEVELOPER)
        assert result.outcome is EscrowOutcome.UNAVAILABLE

    def test_http_layer_answers_not_implemented(self, client, db, employer, developer):
        contract = client.post("/api/contracts", headers=employer.headers, json={
            "developer_id": developer.id,
            "milestones": [{"title": "Only", "amount": 50}],
        }).json()["id"]
        ms_id = client.get(f"/api/contracts/{contract}", headers=employer.headers).json()["milestones"][0]["id"]

        responses = [
            client.post(f"/api/contracts/{contract}/escrow/fund", headers=employer.headers, json={"amount": 50}),
            client.post(f"/api/contracts/{contract}/escrow/refund", headers=employer.headers, json={"amount": 50}),
            client.post(f"/api/contracts/{contract}/milestones/{ms_id}/escrow/release", headers=employer.headers),
        ]
        for r in responses:
            assert r.status_code == 501
            assert r.json() == {"message": UNAVAILABLE_REASON}
        assert db["escrowtransaction"].count_documents({"status": "completed"}) == 0


class TestLedgerWithGateway:
    def test_fund_settles(self, db, contract_id):
        gateway = RecordingGateway()
        ledger = EscrowLedger(db, gateway)
        result = ledger.fund(contract_id, 300, EMPLOYER)
        assert result.outcome is EscrowOutcome.COMPLETED
        assert gateway.calls == [(result.transaction_id, "fund", 300)]
        assert db["escrowtransaction"].find_one()["status"] == "completed"
        assert ledger.balance(contract_id) == 300

    def test_only_employer_funds(self, db, contract_id):
        with pytest.raises(Forbidden):
            EscrowLedger(db, RecordingGateway()).fund(contract_id, 100, DEVELOPER)

    def test_declined_settlement_is_failed(self, db, contract_id):
        ledger = EscrowLedger(db, RecordingGateway(fail=True))
        result = ledger.fund(contract_id, 300, EMPLOYER)
        assert result.outcome is EscrowOutcome.FAILED
        txn = db["escrowtransaction"].find_one()
        assert txn["status"] == "failed"
        assert txn["metadata"]["failure"] == "card declined"
        assert ledger.balance(contract_id) == 0

    def test_release_takes_commission(self, db, contract_id):
        db["adminconfig"].insert_one({"key": "commission_pct", "value": "10"})
        ledger = EscrowLedger(db, RecordingGateway())
        ledger.fund(contract_id, 300, EMPLOYER)

        result = ledger.release(contract_id, "ms-1", EMPLOYER)
        assert result.outcome is EscrowOutcome.COMPLETED
        release = db["escrowtransaction"].find_one({"type": "release"})
        assert release["amount"] == 90
        assert release["metadata"]["gross_amount"] == 100
        fee = db["escrowtransaction"].find_one({"type": "commission"})
        assert fee["amount"] == 10
        assert str(fee["_id"]) == result.commission_id
        assert ledger.balance(contract_id) == 200

    def test_commission_defaults_to_platform_setting(self, db, contract_id):
        ledger = EscrowLedger(db, RecordingGateway(), default_commission_pct=5)
        ledger.fund(contract_id, 300, EMPLOYER)
        ledger.release(contract_id, "ms-2", EMPLOYER)
        assert db["escrowtransaction"].find_one({"type": "commission"})["amount"] == 10

    def test_release_twice_conflicts(self, db, contract_id):
        ledger = EscrowLedger(db, RecordingGateway())
        ledger.fund(contract_id, 300, EMPLOYER)
        ledger.release(contract_id, "ms-1", EMPLOYER)
        with pytest.raises(Conflict):
            ledger.release(contract_id, "ms-1", EMPLOYER)

    def test_release_needs_balance(self, db, contract_id):
        ledger = EscrowLedger(db, RecordingGateway())
        ledger.fund(contract_id, 50, EMPLOYER)
        with pytest.raises(ValidationFailed):
            ledger.release(contract_id, "ms-1", EMPLOYER)

    def test_refund_bounded_by_balance(self, db, contract_id):
        ledger = EscrowLedger(db, RecordingGateway())
        ledger.fund(contract_id, 100, EMPLOYER)
        with pytest.raises(ValidationFailed):
            ledger.refund(contract_id, 150, EMPLOYER)
        admin = Identity(id="admin-1", role="admin")
        assert ledger.refund(contract_id, 100, admin).outcome is EscrowOutcome.COMPLETED
        assert ledger.balance(contract_id) == 0

    def test_retry_settles_pending_once(self, db, contract_id):
        txn_id = create_document(db, "escrowtransaction", EscrowTransaction(contract_id=contract_id, type="fund", amount=75))
        gateway = RecordingGateway()
        ledger = EscrowLedger(db, gateway)

        assert ledger.retry(txn_id).outcome is EscrowOutcome.COMPLETED
        assert ledger.retry(txn_id).outcome is EscrowOutcome.COMPLETED
        assert gateway.calls == [(txn_id, "fund", 75)]

    def test_http_with_gateway(self, client, db, employer, developer):
        gateway = RecordingGateway()
        contract = client.post("/api/contracts", headers=employer.headers, json={
            "developer_id": developer.id,
            "milestones": [{"title": "Only", "amount": 50}],
        }).json()["id"]
        app.dependency_overrides[get_ledger] = lambda: EscrowLedger(db, gateway)

        r = client.post(f"/api/contracts/{contract}/escrow/fund", headers=employer.headers, json={"amount": 50})
        assert r.status_code == 200
        assert r.json()["outcome"] == "completed"
        assert db["auditlog"].find_one({"action": "escrow_fund"})
