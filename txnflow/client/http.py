"""httpx-based access to the remote transaction service."""
from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx

from txnflow.engine.resume import DraftRecord, RequestStatusRecord
from txnflow.errors import ApiError
from txnflow.settings import settings

logger = logging.getLogger(__name__)

_ENVELOPE_KEYS = {"data", "message", "success", "statusCode", "timestamp"}


class TokenProvider(Protocol):
    def token(self) -> str | None: ...

    async def refresh(self) -> str | None: ...


class StaticToken:
    """A fixed bearer token; refresh just returns it again."""

    def __init__(self, value: str | None = None):
        self.value = value

    def token(self) -> str | None:
        return self.value

    async def refresh(self) -> str | None:
        return self.value


def extract_error_message(response: httpx.Response) -> str:
    """Pull a readable message out of an error body, falling back to the raw text."""
    text = response.text or ""
    try:
        body = json.loads(text)
    except ValueError:
        return text.strip() or response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return text.strip() or f"HTTP {response.status_code}"


class ServiceClient:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        tokens: TokenProvider | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.tokens = tokens or StaticToken()
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.API_BASE_URL,
            timeout=timeout if timeout is not None else settings.API_TIMEOUT_SEC,
            transport=transport,
        )

    async def request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        """Send a JSON request; 401 triggers one token refresh and a retry."""
        response = await self._send(method, path, payload, self.tokens.token())
        if response.status_code == 401:
            logger.info("%s %s returned 401, refreshing token", method, path)
            token = await self.tokens.refresh()
            response = await self._send(method, path, payload, token)

        if not 200 <= response.status_code < 300:
            message = extract_error_message(response)
            logger.warning("%s %s failed: %s %s", method, path, response.status_code, message)
            raise ApiError(response.status_code, message)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise ApiError(response.status_code, "Invalid JSON in response") from None

    async def get(self, path: str) -> Any:
        return await self.request("GET", path)

    async def post(self, path: str, payload: dict[str, Any]) -> Any:
        return await self.request("POST", path, payload)

    async def put(self, path: str, payload: dict[str, Any]) -> Any:
        return await self.request("PUT", path, payload)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, payload: dict[str, Any] | None, token: str | None) -> httpx.Response:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            return await self._client.request(method, path, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ApiError(0, f"Network error: {e}") from e


def _unwrap(body: Any) -> Any:
    """Accept both bare payloads and {"data": ...} envelopes."""
    if isinstance(body, dict) and "data" in body and set(body) <= _ENVELOPE_KEYS:
        return body["data"]
    return body


class HttpTransactionService:
    """TransactionService over a ServiceClient."""

    def __init__(self, client: ServiceClient):
        self.client = client

    async def fetch_lookup(self, endpoint: str) -> list[str]:
        body = _unwrap(await self.client.get(endpoint))
        if not isinstance(body, list):
            raise ApiError(0, f"Lookup {endpoint} did not return a list")
        items: list[str] = []
        for item in body:
            if isinstance(item, dict):
                items.append(str(item.get("name") or item.get("nameEn") or item.get("id", "")))
            else:
                items.append(str(item))
        return items

    async def fetch(self, endpoint: str) -> dict[str, Any]:
        body = _unwrap(await self.client.get(endpoint))
        return body if isinstance(body, dict) else {"value": body}

    async def post_step(self, endpoint: str, data: dict[str, str], update: bool = False) -> dict[str, Any]:
        body = await (self.client.put(endpoint, data) if update else self.client.post(endpoint, data))
        body = _unwrap(body)
        return body if isinstance(body, dict) else {}

    async def submit(self, endpoint: str, data: dict[str, str]) -> dict[str, Any]:
        body = _unwrap(await self.client.post(endpoint, data))
        return body if isinstance(body, dict) else {"result": body}


class HttpRequestsApi:
    """Remote resume source and progress sink."""

    def __init__(self, client: ServiceClient, base_path: str = "api/v1/requests"):
        self.client = client
        self.base_path = base_path.rstrip("/")

    async def get_request_status(self, request_id: str) -> RequestStatusRecord | None:
        try:
            body = _unwrap(await self.client.get(f"{self.base_path}/{request_id}"))
        except ApiError as e:
            if e.code == 404:
                return None
            raise
        return RequestStatusRecord(
            id=str(body.get("id", request_id)),
            status=str(body.get("status", "")).upper(),
            transaction_type=str(body.get("transactionType", "")),
            form_data={k: str(v) for k, v in (body.get("formData") or {}).items()},
            last_completed_step=int(body.get("lastCompletedStep", -1)),
            rejection_reason=body.get("rejectionReason"),
        )

    async def save_draft(self, draft: DraftRecord) -> str:
        payload = {
            "userId": draft.user_id,
            "transactionType": draft.transaction_type,
            "entity": draft.entity,
            "formData": draft.form_data,
            "lastCompletedStep": draft.last_completed_step,
            "status": draft.status,
        }
        body = _unwrap(await self.client.post(self.base_path, payload))
        if isinstance(body, dict) and body.get("id") is not None:
            return str(body["id"])
        raise ApiError(0, "Draft save returned no request id")
