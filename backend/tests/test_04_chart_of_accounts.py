"""
Chart of Accounts Tests — funds, account hierarchy by dotted code, control
accounts, fund and account deactivation, and deletion guards.

Tests 53-67, 188.
"""
import pytest

from app.errors import AccountInUseError, DuplicateCodeError, InvalidHierarchyError, ValidationError
from app.schemas.gl import AccountCreate
from app.services.coa_service import ChartOfAccountsService

BASE_URL = "http://test"


# ===================================================================
# Tests 53-56: Funds
# ===================================================================
class TestFunds:

    async def test_53_list_funds(self, client, auditor_headers, ledger):
        r = await client.get(f"{BASE_URL}/api/gl/funds", headers=auditor_headers)
        assert r.status_code == 200
        assert [f["code"] for f in r.json()["items"]] == ["GEN"]

    async def test_54_create_restricted_fund(self, client, admin_headers, ledger):
        r = await client.post(
            f"{BASE_URL}/api/gl/funds",
            headers=admin_headers,
            json={"code": "SCHOL", "name": "Scholarship Endowment",
                  "restriction_type": "permanently_restricted"},
        )
        assert r.status_code == 201, r.text
        assert r.json()["restriction_type"] == "permanently_restricted"

    async def test_55_duplicate_fund_code(self, client, admin_headers, ledger):
        r = await client.post(
            f"{BASE_URL}/api/gl/funds",
            headers=admin_headers,
            json={"code": "GEN", "name": "Another General"},
        )
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "DUPLICATE_CODE"

    async def test_56_unknown_restriction_type(self, client, admin_headers, ledger):
        r = await client.post(
            f"{BASE_URL}/api/gl/funds",
            headers=admin_headers,
            json={"code": "X", "name": "X", "restriction_type": "sort_of_restricted"},
        )
        assert r.status_code == 422


# ===================================================================
# Tests 57-62: Accounts
# ===================================================================
class TestAccounts:

    async def test_57_child_account_links_to_parent(self, client, admin_headers, ledger):
        r = await client.post(
            f"{BASE_URL}/api/gl/accounts",
            headers=admin_headers,
            json={"code": "4000.10", "name": "Tuition - Grade 10",
                  "account_type": "income", "normal_balance": "credit"},
        )
        assert r.status_code == 201, r.text
        assert r.json()["parent_id"] == str(ledger.tuition)

        r = await client.get(f"{BASE_URL}/api/gl/accounts/tree", headers=admin_headers)
        tuition = next(n for n in r.json()["items"] if n["code"] == "4000")
        assert [c["code"] for c in tuition["children"]] == ["4000.10"]

    async def test_58_missing_parent_rejected(self, client, admin_headers, ledger):
        r = await client.post(
            f"{BASE_URL}/api/gl/accounts",
            headers=admin_headers,
            json={"code": "4100.10", "name": "Orphan",
                  "account_type": "income", "normal_balance": "credit"},
        )
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "INVALID_HIERARCHY"

    async def test_59_duplicate_account_code(self, db_session, ledger):
        with pytest.raises(DuplicateCodeError):
            await ChartOfAccountsService(db_session).create_account(AccountCreate(
                code="1000", name="Petty Cash", account_type="asset", normal_balance="debit",
            ))

    async def test_60_control_account_needs_subledger(self, db_session, ledger):
        service = ChartOfAccountsService(db_session)
        with pytest.raises(ValidationError):
            await service.create_account(AccountCreate(
                code="1210", name="Other AR", account_type="asset", normal_balance="debit",
                is_control_account=True,
            ))
        with pytest.raises(ValidationError):
            await service.create_account(AccountCreate(
                code="1220", name="Not control", account_type="asset", normal_balance="debit",
                subledger="ar",
            ))

    async def test_61_invalid_account_type(self, client, admin_headers, ledger):
        r = await client.post(
            f"{BASE_URL}/api/gl/accounts",
            headers=admin_headers,
            json={"code": "9000", "name": "Bad", "account_type": "revenue",
                  "normal_balance": "credit"},
        )
        assert r.status_code == 422

    async def test_62_get_account_by_code(self, client, bursar_headers, ledger):
        r = await client.get(f"{BASE_URL}/api/gl/accounts/1200", headers=bursar_headers)
        assert r.status_code == 200
        assert r.json()["is_control_account"] is True
        assert r.json()["subledger"] == "ar"


# ===================================================================
# Tests 63-66: Deactivate & delete
# ===================================================================
class TestAccountRetirement:

    async def test_63_unused_account_can_be_deleted(self, client, admin_headers, ledger):
        r = await client.delete(f"{BASE_URL}/api/gl/accounts/5000", headers=admin_headers)
        assert r.status_code == 204
        r = await client.get(f"{BASE_URL}/api/gl/accounts/5000", headers=admin_headers)
        assert r.status_code == 404

    async def test_64_account_with_postings_cannot_be_deleted(self, client, admin_headers, ledger):
        r = await client.post(
            f"{BASE_URL}/api/gl/journal-entries",
            headers=admin_headers,
            json={
                "entry_date": "2025-01-15",
                "lines": [
                    {"account_id": str(ledger.cash), "debit": 100, "credit": 0},
                    {"account_id": str(ledger.equity), "debit": 0, "credit": 100},
                ],
            },
        )
        assert r.status_code == 201, r.text
        r = await client.delete(f"{BASE_URL}/api/gl/accounts/1000", headers=admin_headers)
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "ACCOUNT_IN_USE"

    async def test_65_parent_account_cannot_be_deleted(self, db_session, ledger):
        service = ChartOfAccountsService(db_session)
        await service.create_account(AccountCreate(
            code="5000.1", name="Art Supplies", account_type="expense", normal_balance="debit",
        ))
        with pytest.raises(AccountInUseError, match="child"):
            await service.delete_account("5000")

    async def test_66_deactivated_account_hidden_from_list(self, client, admin_headers, ledger):
        r = await client.post(f"{BASE_URL}/api/gl/accounts/5000/deactivate",
                              headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["is_active"] is False

        r = await client.get(f"{BASE_URL}/api/gl/accounts", headers=admin_headers)
        assert "5000" not in [a["code"] for a in r.json()["items"]]
        r = await client.get(f"{BASE_URL}/api/gl/accounts?include_inactive=true",
                             headers=admin_headers)
        assert "5000" in [a["code"] for a in r.json()["items"]]


class TestHierarchyErrorType:

    async def test_67_invalid_hierarchy_is_a_validation_error(self, db_session, ledger):
        with pytest.raises(InvalidHierarchyError) as exc:
            await ChartOfAccountsService(db_session).create_account(AccountCreate(
                code="7000.1.2", name="Deep", account_type="expense", normal_balance="debit",
            ))
        assert isinstance(exc.value, ValidationError)
        assert exc.value.details["parent_code"] == "7000.1"


# ===================================================================
# Test 188: Fund deactivation
# ===================================================================
class TestFundDeactivation:

    async def test_188_deactivated_fund_refuses_postings(
        self, client, admin_headers, accountant_headers, bursar_headers, ledger
    ):
        r = await client.post(f"{BASE_URL}/api/gl/funds/GEN/deactivate", headers=accountant_headers)
        assert r.status_code == 403

        r = await client.post(f"{BASE_URL}/api/gl/funds/GEN/deactivate", headers=admin_headers)
        assert r.status_code == 200, r.text
        assert r.json()["is_active"] is False

        r = await client.post(
            f"{BASE_URL}/api/gl/journal-entries",
            headers=admin_headers,
            json={"entry_date": "2025-02-15", "lines": [
                {"account_id": str(ledger.cash), "debit": 100, "credit": 0},
                {"account_id": str(ledger.equity), "debit": 0, "credit": 100},
            ]},
        )
        assert r.status_code == 400
        assert "inactive" in r.json()["error"]["message"]

        r = await client.post(f"{BASE_URL}/api/fees", headers=bursar_headers, json={
            "student_id": "S-1001", "fund_id": str(ledger.fund),
            "bill_date": "2025-02-01", "due_date": "2025-03-01",
            "line_items": [{"description": "Tuition", "amount": 100,
                            "income_account_id": str(ledger.tuition)}],
        })
        assert r.status_code == 400

        r = await client.get(f"{BASE_URL}/api/gl/funds", headers=admin_headers)
        assert r.json()["items"] == []
        r = await client.post(f"{BASE_URL}/api/gl/funds/NOPE/deactivate", headers=admin_headers)
        assert r.status_code == 404
