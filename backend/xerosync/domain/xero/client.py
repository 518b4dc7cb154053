from __future__ import annotations

from typing import Any

import httpx

from xerosync.infra.metrics import Metrics

RATE_LIMIT_MARKERS = ("rate limit", "429", "too many requests", "quota exceeded")


class XeroApiError(ValueError):
    """Failed Xero API call.

    `code` is a stable snake_case identifier; `detail` carries the provider's
    message when one was returned.
    """

    def __init__(
        self,
        code: str,
        *,
        status_code: int | None = None,
        detail: str | None = None,
        transient: bool = False,
        payload: dict | None = None,
    ) -> None:
        super().__init__(code)
        self.code = code
        self.status_code = status_code
        self.detail = detail
        self.transient = transient
        self.payload = payload

    @property
    def message(self) -> str:
        return f"{self.code}: {self.detail}" if self.detail else self.code

    @property
    def rate_limited(self) -> bool:
        if self.status_code == 429:
            return True
        text = (self.detail or "").lower()
        return any(marker in text for marker in RATE_LIMIT_MARKERS)

    @property
    def retryable(self) -> bool:
        return self.rate_limited or self.transient


def _validation_messages(data: Any) -> list[str]:
    messages: list[str] = []
    if not isinstance(data, dict):
        return messages
    for element in data.get("Elements") or []:
        for error in element.get("ValidationErrors") or []:
            message = error.get("Message")
            if message:
                messages.append(str(message))
    return messages


def _error_detail(response: httpx.Response) -> tuple[str | None, dict | None]:
    try:
        data = response.json()
    except ValueError:
        text = response.text.strip()
        return (text[:500] or None), None
    if not isinstance(data, dict):
        return None, None
    messages = _validation_messages(data)
    if messages:
        return "; ".join(messages), data
    detail = data.get("Detail") or data.get("Message") or data.get("Title")
    return (str(detail) if detail else None), data


def _escape_filter_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


class XeroClient:
    def __init__(
        self,
        access_token: str,
        tenant_id: str,
        *,
        base_url: str,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self._metrics = metrics
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Xero-Tenant-Id": tenant_id,
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "XeroClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> dict:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            self._record(operation, None)
            raise XeroApiError(f"xero_{operation}_timeout", detail=type(exc).__name__, transient=True) from exc
        except httpx.TransportError as exc:
            self._record(operation, None)
            raise XeroApiError(f"xero_{operation}_unreachable", detail=type(exc).__name__, transient=True) from exc

        self._record(operation, response.status_code)
        if response.status_code >= 400:
            detail, data = _error_detail(response)
            if response.status_code == 429:
                problem = response.headers.get("X-Rate-Limit-Problem")
                detail = detail or f"rate limit exceeded ({problem or 'unknown'})"
            raise XeroApiError(
                f"xero_{operation}_failed",
                status_code=response.status_code,
                detail=detail,
                transient=response.status_code >= 500,
                payload=data,
            )
        if not response.content:
            return {}
        data = response.json()
        messages = _validation_messages(data)
        if messages:
            raise XeroApiError(
                f"xero_{operation}_failed",
                status_code=response.status_code,
                detail="; ".join(messages),
                payload=data,
            )
        return data

    def _record(self, operation: str, status_code: int | None) -> None:
        if self._metrics is not None:
            self._metrics.record_xero_api_call(operation, status_code)

    async def get_organisation(self) -> dict:
        data = await self._request("organisation", "GET", "/Organisation")
        organisations = data.get("Organisations") or []
        return organisations[0] if organisations else {}

    async def find_contacts_by_name(self, name: str) -> list[dict]:
        data = await self._request(
            "contact_search",
            "GET",
            "/Contacts",
            params={"where": f'Name=="{_escape_filter_value(name)}"', "includeArchived": "true"},
        )
        return list(data.get("Contacts") or [])

    async def find_contacts_by_email(self, email: str) -> list[dict]:
        data = await self._request(
            "contact_search",
            "GET",
            "/Contacts",
            params={"where": f'EmailAddress=="{_escape_filter_value(email)}"', "includeArchived": "true"},
        )
        return list(data.get("Contacts") or [])

    async def create_contact(self, payload: dict) -> dict:
        data = await self._request("contact_create", "PUT", "/Contacts", json={"Contacts": [payload]})
        contacts = data.get("Contacts") or []
        if not contacts:
            raise XeroApiError("xero_contact_create_empty_response")
        return contacts[0]

    async def update_contact(self, contact_id: str, payload: dict) -> dict:
        data = await self._request(
            "contact_update",
            "POST",
            f"/Contacts/{contact_id}",
            json={"Contacts": [{**payload, "ContactID": contact_id}]},
        )
        contacts = data.get("Contacts") or []
        return contacts[0] if contacts else {}

    async def create_invoice(self, payload: dict) -> dict:
        data = await self._request("invoice_create", "PUT", "/Invoices", json={"Invoices": [payload]})
        invoices = data.get("Invoices") or []
        if not invoices:
            raise XeroApiError("xero_invoice_create_empty_response")
        return invoices[0]

    async def create_payment(self, payload: dict) -> dict:
        data = await self._request("payment_create", "PUT", "/Payments", json={"Payments": [payload]})
        payments = data.get("Payments") or []
        if not payments:
            raise XeroApiError("xero_payment_create_empty_response")
        return payments[0]

    async def create_credit_note(self, payload: dict) -> dict:
        data = await self._request(
            "credit_note_create", "PUT", "/CreditNotes", json={"CreditNotes": [payload]}
        )
        credit_notes = data.get("CreditNotes") or []
        if not credit_notes:
            raise XeroApiError("xero_credit_note_create_empty_response")
        return credit_notes[0]
