"""
Shared fixtures: fixed clock, loan factories and an in-memory stand-in for the
remote loan service served over httpx.MockTransport.
"""

import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from emi_ledger.currency import Money
from emi_ledger.models import Loan, LoanStatus, KycStatus


REMOTE_URL = "http://remote.test/api"


class FixedClock:
    """Controllable clock"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_loan(loan_id="L1", status=LoanStatus.ACTIVE, tenure=12, emi="5000",
              origination=date(2024, 1, 10), kyc=KycStatus.VERIFIED, **overrides) -> Loan:
    return Loan(
        loan_id=loan_id,
        customer_id=overrides.pop("customer_id", "9876543210"),
        customer_name=overrides.pop("customer_name", "Asha Devi"),
        principal=Money(Decimal(overrides.pop("principal", "50000"))),
        emi_amount=Money(Decimal(emi)),
        tenure=tenure,
        origination_date=origination,
        status=status,
        kyc_status=kyc,
        **overrides
    )


def remote_loan(loan_id="L1", status="active", tenure=12, emi="5000",
                origination="2024-01-10", payments=None, kyc="verified", **extra) -> dict:
    """Loan document the way the remote service spells it"""
    raw = {
        "_id": loan_id,
        "loanId": f"LN-{loan_id}",
        "clientName": "Asha Devi",
        "clientMobile": "9876543210",
        "loanAmount": "50000",
        "emiAmount": emi,
        "tenure": tenure,
        "emiStartDate": origination,
        "status": status,
        "kycStatus": kyc,
        "payments": payments or [],
    }
    raw.update(extra)
    return raw


def remote_payment(sequence, amount="5000", paid="2024-02-02T10:00:00Z", mode="upi", penalty="0"):
    return {
        "_id": f"P{sequence}",
        "amount": amount,
        "paymentMode": mode,
        "paymentDate": paid,
        "emiNumber": sequence,
        "penalty": penalty,
        "transactionId": f"TXN-{sequence}",
    }


class FakeLoanBackend:
    """
    Minimal remote loan service. Honours Idempotency-Key on payments, answers
    409 for an out-of-sequence installment and can be scripted to fail.
    """

    def __init__(self):
        self.loans = {}
        self.requests = []
        self.failures = []
        self.applied_keys = {}
        self.offline = False

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def add_loan(self, raw: dict) -> dict:
        self.loans[raw["_id"]] = raw
        return raw

    def fail_next(self, status_code: int, method: str = None, body=None, times: int = 1) -> None:
        for _ in range(times):
            self.failures.append((method, status_code, body))

    def writes(self, method: str = None) -> list:
        return [r for r in self.requests if r["method"] != "GET" and (method is None or r["method"] == method)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.offline:
            raise httpx.ConnectError("network unreachable", request=request)
        if request.url.path == "/api/health":
            return httpx.Response(200, json={"status": "ok"})

        body = json.loads(request.content) if request.content else None
        record = {
            "method": request.method,
            "path": request.url.path,
            "json": body,
            "idempotency_key": request.headers.get("Idempotency-Key"),
        }
        self.requests.append(record)

        for index, (method, status_code, failure_body) in enumerate(self.failures):
            if method is None or method == request.method:
                del self.failures[index]
                return httpx.Response(status_code, json=failure_body or {"message": "scripted failure"})

        parts = request.url.path[len("/api"):].strip("/").split("/")
        if parts == ["loans"] and request.method == "GET":
            return httpx.Response(200, json={"loans": list(self.loans.values())})

        loan = self.loans.get(parts[1]) if len(parts) > 1 else None
        if loan is None:
            return httpx.Response(404, json={"message": "Loan not found"})

        if len(parts) == 2 and request.method == "GET":
            return httpx.Response(200, json={"loan": loan})
        if len(parts) == 2 and request.method == "DELETE":
            del self.loans[parts[1]]
            return httpx.Response(200, json={"message": "deleted"})
        if parts[2:] == ["payment"] and request.method == "POST":
            return self._payment(loan, body, record["idempotency_key"])
        if parts[2:] == ["status"] and request.method == "PUT":
            loan["status"] = body["status"].lower()
            loan["statusComment"] = body["comment"]
            return httpx.Response(200, json={"loan": loan})
        return httpx.Response(405, json={"message": "unsupported"})

    def _payment(self, loan: dict, body: dict, key: str) -> httpx.Response:
        if key in self.applied_keys:
            return httpx.Response(200, json={"transactionId": self.applied_keys[key]})
        if body["emiNumber"] != len(loan["payments"]) + 1:
            return httpx.Response(409, json={"message": "Installment already collected"})
        ref = f"TXN-{loan['_id']}-{body['emiNumber']}"
        loan["payments"].append({
            "_id": f"P-{loan['_id']}-{body['emiNumber']}",
            "amount": body["amount"],
            "paymentMode": body["paymentMode"],
            "paymentDate": body["paymentDate"],
            "emiNumber": body["emiNumber"],
            "penalty": body["penalty"],
            "transactionId": ref,
        })
        if loan["status"] == "approved":
            loan["status"] = "active"
        if len(loan["payments"]) == loan["tenure"]:
            loan["status"] = "paid"
        self.applied_keys[key] = ref
        return httpx.Response(201, json={"transactionId": ref})


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def backend():
    return FakeLoanBackend()
