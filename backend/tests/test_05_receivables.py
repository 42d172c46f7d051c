"""
Accounts Receivable Tests — student bills post to AR control, payments and
allocations, over-allocation guards, voids, idempotent retries, posting-account
checks and refunds of unapplied credit.

Tests 68-85, 171-176.
"""
import uuid

import pytest

from app.errors import OverAllocationError, PeriodLockedError, ValidationError
from app.schemas.ar import StudentBillCreate, StudentPaymentCreate, StudentRefundCreate
from app.services.ar_service import ReceivablesService

BASE_URL = "http://test"


def bill_body(ledger, amount=50000, student="S-1001", bill_date="2025-01-15",
              due_date="2025-02-15"):
    return {
        "student_id": student,
        "fund_id": str(ledger.fund),
        "bill_date": bill_date,
        "due_date": due_date,
        "description": "Spring tuition",
        "line_items": [
            {"description": "Tuition", "amount": amount,
             "income_account_id": str(ledger.tuition)},
        ],
    }


def payment_body(ledger, amount, allocations=(), student="S-1001", payment_date="2025-02-01"):
    return {
        "student_id": student,
        "fund_id": str(ledger.fund),
        "payment_date": payment_date,
        "amount": amount,
        "method": "card",
        "allocations": [{"bill_id": bill_id, "amount": a} for bill_id, a in allocations],
    }


async def create_bill(client, headers, ledger, **kwargs):
    r = await client.post(f"{BASE_URL}/api/fees", headers=headers, json=bill_body(ledger, **kwargs))
    assert r.status_code == 201, r.text
    return r.json()


# ===================================================================
# Tests 68-73: Bills
# ===================================================================
class TestStudentBills:

    async def test_68_bill_posts_to_ar_control(self, client, bursar_headers, admin_headers, ledger):
        bill = await create_bill(client, bursar_headers, ledger)
        assert bill["bill_number"] == "BILL-2025-000001"
        assert bill["status"] == "open"
        assert bill["balance_due"] == 50000

        r = await client.get(f"{BASE_URL}/api/gl/journal-entries/{bill['journal_entry_id']}",
                             headers=admin_headers)
        je = r.json()
        assert je["source_type"] == "ar-bill"
        assert je["source_id"] == bill["id"]
        assert [(l["account_code"], l["debit"], l["credit"]) for l in je["lines"]] == [
            ("1200", 50000, 0),
            ("4000", 0, 50000),
        ]

    async def test_69_multi_line_bill_totals(self, client, bursar_headers, ledger):
        body = bill_body(ledger)
        body["line_items"].append(
            {"description": "Lab fee", "amount": 7500, "income_account_id": str(ledger.tuition)}
        )
        r = await client.post(f"{BASE_URL}/api/fees", headers=bursar_headers, json=body)
        assert r.status_code == 201, r.text
        assert r.json()["total_amount"] == 57500
        assert len(r.json()["line_items"]) == 2

    async def test_70_bill_numbers_increment(self, client, bursar_headers, ledger):
        first = await create_bill(client, bursar_headers, ledger)
        second = await create_bill(client, bursar_headers, ledger, student="S-1002")
        assert first["bill_number"] == "BILL-2025-000001"
        assert second["bill_number"] == "BILL-2025-000002"

    async def test_71_zero_amount_line_rejected(self, client, bursar_headers, ledger):
        r = await client.post(f"{BASE_URL}/api/fees", headers=bursar_headers,
                              json=bill_body(ledger, amount=0))
        assert r.status_code == 422

    async def test_72_due_before_bill_date_rejected(self, client, bursar_headers, ledger):
        r = await client.post(f"{BASE_URL}/api/fees", headers=bursar_headers,
                              json=bill_body(ledger, due_date="2025-01-01"))
        assert r.status_code == 422

    async def test_73_idempotent_bill_retry(self, client, bursar_headers, ledger):
        headers = {**bursar_headers, "Idempotency-Key": "fall-tuition-S-1001"}
        first = await client.post(f"{BASE_URL}/api/fees", headers=headers, json=bill_body(ledger))
        retry = await client.post(f"{BASE_URL}/api/fees", headers=headers, json=bill_body(ledger))
        assert first.status_code == retry.status_code == 201
        assert first.json()["id"] == retry.json()["id"]

        r = await client.get(f"{BASE_URL}/api/fees?student_id=S-1001", headers=bursar_headers)
        assert r.json()["total"] == 1


# ===================================================================
# Tests 74-80: Payments
# ===================================================================
class TestStudentPayments:

    async def test_74_partial_payment(self, client, bursar_headers, ledger):
        bill = await create_bill(client, bursar_headers, ledger)
        r = await client.post(f"{BASE_URL}/api/payments", headers=bursar_headers,
                              json=payment_body(ledger, 20000, [(bill["id"], 20000)]))
        assert r.status_code == 201, r.text
        assert r.json()["payment_number"] == "PAY-2025-000001"
        assert r.json()["allocated_amount"] == 20000

        r = await client.get(f"{BASE_URL}/api/fees/{bill['id']}", headers=bursar_headers)
        assert r.json()["status"] == "partial"
        assert r.json()["balance_due"] == 30000

    async def test_75_full_payment_settles_bill(self, client, bursar_headers, ledger):
        bill = await create_bill(client, bursar_headers, ledger)
        await client.post(f"{BASE_URL}/api/payments", headers=bursar_headers,
                          json=payment_body(ledger, 50000, [(bill["id"], 50000)]))
        r = await client.get(f"{BASE_URL}/api/fees/{bill['id']}", headers=bursar_headers)
        assert r.json()["status"] == "paid"
        assert r.json()["balance_due"] == 0

    async def test_76_unallocated_payment_is_credit(self, client, bursar_headers, ledger):
        r = await client.post(f"{BASE_URL}/api/payments", headers=bursar_headers,
                              json=payment_body(ledger, 15000))
        assert r.status_code == 201, r.text
        assert r.json()["unallocated_amount"] == 15000

    async def test_77_allocations_exceed_payment(self, client, bursar_headers, ledger):
        bill = await create_bill(client, bursar_headers, ledger)
        r = await client.post(f"{BASE_URL}/api/payments", headers=bursar_headers,
                              json=payment_body(ledger, 1000, [(bill["id"], 1500)]))
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "OVER_ALLOCATION"

    async def test_78_allocation_exceeds_outstanding(self, client, bursar_headers, ledger):
        bill = await create_bill(client, bursar_headers, ledger, amount=5000)
        r = await client.post(f"{BASE_URL}/api/payments", headers=bursar_headers,
                              json=payment_body(ledger, 6000, [(bill["id"], 6000)]))
        assert r.status_code == 422
        assert r.json()["error"]["details"]["outstanding"] == 5000

        r = await client.get(f"{BASE_URL}/api/payments", headers=bursar_headers)
        assert r.json()["total"] == 0

    async def test_79_split_allocations_to_same_bill_are_summed(self, db_session, ledger):
        service = ReceivablesService(db_session)
        bill = await service.record_bill(StudentBillCreate(**bill_body(ledger, amount=3000)))
        with pytest.raises(OverAllocationError):
            await service.record_payment(StudentPaymentCreate(
                **payment_body(ledger, 4000, [(str(bill.id), 2000), (str(bill.id), 2000)])
            ))

    async def test_80_bill_of_another_student_rejected(self, db_session, ledger):
        service = ReceivablesService(db_session)
        bill = await service.record_bill(StudentBillCreate(**bill_body(ledger, student="S-2000")))
        with pytest.raises(ValidationError, match="another student"):
            await service.record_payment(StudentPaymentCreate(
                **payment_body(ledger, 1000, [(str(bill.id), 1000)], student="S-1001")
            ))


# ===================================================================
# Tests 81-85: Voids & permissions
# ===================================================================
class TestVoidAndAccess:

    async def test_81_void_reverses_bill_entry(self, client, bursar_headers, admin_headers, ledger):
        bill = await create_bill(client, bursar_headers, ledger)
        r = await client.post(f"{BASE_URL}/api/fees/{bill['id']}/void", headers=bursar_headers)
        assert r.status_code == 200, r.text
        voided = r.json()
        assert voided["status"] == "void"
        assert voided["balance_due"] == 0
        assert voided["voided_on"] == "2025-01-15"

        r = await client.get(f"{BASE_URL}/api/gl/accounts/1200/balance", headers=admin_headers)
        assert r.json()["balance"] == 0

    async def test_82_void_paid_bill_rejected(self, client, bursar_headers, ledger):
        bill = await create_bill(client, bursar_headers, ledger)
        await client.post(f"{BASE_URL}/api/payments", headers=bursar_headers,
                          json=payment_body(ledger, 100, [(bill["id"], 100)]))
        r = await client.post(f"{BASE_URL}/api/fees/{bill['id']}/void", headers=bursar_headers)
        assert r.status_code == 400

    async def test_83_void_twice_rejected(self, client, bursar_headers, ledger):
        bill = await create_bill(client, bursar_headers, ledger)
        await client.post(f"{BASE_URL}/api/fees/{bill['id']}/void", headers=bursar_headers)
        r = await client.post(f"{BASE_URL}/api/fees/{bill['id']}/void", headers=bursar_headers)
        assert r.status_code == 400
        assert "already void" in r.json()["error"]["message"]

    async def test_84_payment_to_void_bill_rejected(self, client, bursar_headers, ledger):
        bill = await create_bill(client, bursar_headers, ledger)
        await client.post(f"{BASE_URL}/api/fees/{bill['id']}/void", headers=bursar_headers)
        r = await client.post(f"{BASE_URL}/api/payments", headers=bursar_headers,
                              json=payment_body(ledger, 100, [(bill["id"], 100)]))
        assert r.status_code == 400

    async def test_85_auditor_cannot_bill(self, client, auditor_headers, ledger):
        r = await client.post(f"{BASE_URL}/api/fees", headers=auditor_headers,
                              json=bill_body(ledger))
        assert r.status_code == 403
        r = await client.get(f"{BASE_URL}/api/fees", headers=auditor_headers)
        assert r.status_code == 200


# ===================================================================
# Tests 171-176: Period gating, posting accounts, payment lookup, refunds
# ===================================================================
class TestReceivableGuards:

    async def test_171_bill_into_locked_period_rejected(self, db_session, ledger, close_policy):
        close_policy(require_reconciled=False)
        service = ReceivablesService(db_session)
        await service.journal.periods.lock_period(ledger.period, "controller")
        with pytest.raises(PeriodLockedError):
            await service.record_bill(StudentBillCreate(**bill_body(ledger, bill_date="2025-02-15")))

    async def test_172_payment_into_control_account_rejected(self, client, bursar_headers,
                                                             admin_headers, ledger):
        bill = await create_bill(client, bursar_headers, ledger, amount=10000)
        body = payment_body(ledger, 4000, [(bill["id"], 4000)])
        body["cash_account_id"] = str(ledger.ar)
        r = await client.post(f"{BASE_URL}/api/payments", headers=bursar_headers, json=body)
        assert r.status_code == 400
        assert r.json()["error"]["details"] == {"account_code": "1200", "role": "cash"}

        r = await client.get(f"{BASE_URL}/api/fees/{bill['id']}", headers=bursar_headers)
        assert r.json()["balance_due"] == 10000
        r = await client.get(f"{BASE_URL}/api/gl/accounts/1200/balance", headers=admin_headers)
        assert r.json()["balance"] == 10000

    async def test_173_bill_line_must_credit_income(self, db_session, ledger):
        service = ReceivablesService(db_session)
        body = bill_body(ledger)
        body["line_items"][0]["income_account_id"] = str(ledger.ar)
        with pytest.raises(ValidationError, match="Control account 1200"):
            await service.record_bill(StudentBillCreate(**body))

        body["line_items"][0]["income_account_id"] = str(ledger.expense)
        with pytest.raises(ValidationError, match="income account must be"):
            await service.record_bill(StudentBillCreate(**body))

    async def test_174_get_payment_by_id(self, client, bursar_headers, ledger):
        r = await client.post(f"{BASE_URL}/api/payments", headers=bursar_headers,
                              json=payment_body(ledger, 2500))
        payment = r.json()
        r = await client.get(f"{BASE_URL}/api/payments/{payment['id']}", headers=bursar_headers)
        assert r.status_code == 200
        assert r.json()["payment_number"] == payment["payment_number"]
        assert r.json()["unallocated_amount"] == 2500

        r = await client.get(f"{BASE_URL}/api/payments/{uuid.uuid4()}", headers=bursar_headers)
        assert r.status_code == 404

    async def test_175_refund_of_unapplied_credit(self, client, bursar_headers, admin_headers,
                                                  ledger):
        await client.post(f"{BASE_URL}/api/payments", headers=bursar_headers,
                          json=payment_body(ledger, 15000))
        r = await client.post(f"{BASE_URL}/api/refunds", headers=bursar_headers, json={
            "student_id": "S-1001",
            "fund_id": str(ledger.fund),
            "refund_date": "2025-03-01",
            "amount": 10000,
            "reason": "Withdrew from summer program",
        })
        assert r.status_code == 201, r.text
        refund = r.json()
        assert refund["refund_number"] == "RFND-2025-000001"

        r = await client.get(f"{BASE_URL}/api/gl/journal-entries/{refund['journal_entry_id']}",
                             headers=admin_headers)
        assert r.json()["source_type"] == "ar-refund"
        assert [(l["account_code"], l["debit"], l["credit"]) for l in r.json()["lines"]] == [
            ("1200", 10000, 0),
            ("1000", 0, 10000),
        ]
        r = await client.get(f"{BASE_URL}/api/gl/accounts/1200/balance", headers=admin_headers)
        assert r.json()["balance"] == -5000

        r = await client.get(f"{BASE_URL}/api/refunds?student_id=S-1001", headers=bursar_headers)
        assert r.json()["total"] == 1

    async def test_176_refund_beyond_credit_rejected(self, db_session, ledger):
        service = ReceivablesService(db_session)
        bill = await service.record_bill(StudentBillCreate(**bill_body(ledger, amount=3000)))
        await service.record_payment(StudentPaymentCreate(
            **payment_body(ledger, 5000, [(str(bill.id), 3000)])
        ))
        refund = {
            "student_id": "S-1001", "fund_id": ledger.fund, "refund_date": "2025-03-01",
            "reason": "Overpayment",
        }
        with pytest.raises(OverAllocationError) as exc:
            await service.record_refund(StudentRefundCreate(**refund, amount=2001))
        assert exc.value.details["available_credit"] == 2000

        await service.record_refund(StudentRefundCreate(**refund, amount=2000))
        assert await service.available_credit("S-1001", ledger.fund) == 0
