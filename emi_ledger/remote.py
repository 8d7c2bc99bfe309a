"""
Remote Loan Service Client Module

Async REST client for the remote system of record. Maps HTTP outcomes onto
the sync error hierarchy so the sync manager can decide between retrying,
reconciling and asking for a refresh.
"""

from typing import Any, Dict, List, Optional
import logging

import httpx

from .errors import (
    LoanNotFound, RemoteRejection, StateConflict, TransientNetworkError
)
from .normalization import unwrap_loan_list, unwrap_loan_payload


logger = logging.getLogger("emi_ledger.remote")

RETRYABLE_STATUS_CODES = frozenset({408, 429})


class RemoteLoanService:
    """REST client for the loan backend"""

    def __init__(
        self,
        base_url: str = "http://localhost:5000/api",
        timeout: float = 10.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config, transport: Optional[httpx.AsyncBaseTransport] = None) -> 'RemoteLoanService':
        return cls(
            base_url=config.remote_base_url,
            timeout=config.remote_timeout,
            api_key=config.remote_api_key or None,
            transport=transport,
        )

    async def list_loans(self) -> List[Dict[str, Any]]:
        """GET /loans"""
        return unwrap_loan_list(await self._request("GET", "/loans"))

    async def get_loan(self, loan_id: str) -> Dict[str, Any]:
        """GET /loans/{id}: the last confirmed snapshot of a loan"""
        return unwrap_loan_payload(await self._request("GET", f"/loans/{loan_id}"))

    async def post_payment(self, loan_id: str, body: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        """POST /loans/{id}/payment"""
        return await self._request("POST", f"/loans/{loan_id}/payment", json=body,
                                   idempotency_key=idempotency_key)

    async def put_status(self, loan_id: str, body: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        """PUT /loans/{id}/status"""
        return await self._request("PUT", f"/loans/{loan_id}/status", json=body,
                                   idempotency_key=idempotency_key)

    async def delete_loan(self, loan_id: str, idempotency_key: str) -> Dict[str, Any]:
        """DELETE /loans/{id}"""
        return await self._request("DELETE", f"/loans/{loan_id}", idempotency_key=idempotency_key)

    async def health_check(self) -> bool:
        try:
            response = await self._client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Remote health check failed: {e}")
            return False

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None,
                       idempotency_key: Optional[str] = None) -> Any:
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise TransientNetworkError(f"{method} {path}: {e}") from e

        status = response.status_code
        if status >= 500 or status in RETRYABLE_STATUS_CODES:
            logger.warning(f"{method} {path} returned {status}")
            raise TransientNetworkError(f"{method} {path} returned {status}")
        if status >= 400:
            detail = self._detail(response)
            logger.warning(f"{method} {path} rejected with {status}: {detail}")
            if status == 404:
                raise LoanNotFound(status, detail)
            if status == 409:
                raise StateConflict(status, detail)
            raise RemoteRejection(status, detail)

        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            return str(body.get("message") or body.get("detail") or body.get("error") or body)
        return str(body)

    async def aclose(self) -> None:
        """Close the HTTP client"""
        await self._client.aclose()
