import itertools
import json
import re
import uuid
from datetime import datetime, timedelta, timezone

import httpx

from xerosync.domain.members import statuses as member_statuses
from xerosync.domain.members.db_models import Member, MemberPayment
from xerosync.domain.xero.db_models import XeroOAuthToken

TENANT_ID = "tenant-1"
WHERE_RE = re.compile(r'^(?P<field>\w+)=="(?P<value>.*)"$')


class FakeXero:
    """In-memory stand-in for the Xero accounting and identity APIs."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.contacts: list[dict] = []
        self.invoices: list[dict] = []
        self.payments: list[dict] = []
        self.credit_notes: list[dict] = []
        self.connections = [{"tenantId": TENANT_ID, "tenantName": "Demo Club"}]
        self.token_requests: list[dict] = []
        self._queued: dict[tuple[str, str], list[httpx.Response]] = {}
        self._token_queue: list[httpx.Response] = []
        self._ids = itertools.count(1)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    @property
    def token_transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle_token)

    def queue(self, method: str, resource: str, response: httpx.Response) -> None:
        self._queued.setdefault((method, resource), []).append(response)

    def queue_token(self, response: httpx.Response) -> None:
        self._token_queue.append(response)

    def calls(self, method: str, resource: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and _resource(request) == resource
        ]

    def add_contact(self, name: str, *, email: str | None = None, status: str = "ACTIVE") -> dict:
        contact = {
            "ContactID": f"contact-{next(self._ids)}",
            "Name": name,
            "EmailAddress": email,
            "ContactStatus": status,
        }
        self.contacts.append(contact)
        return contact

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        resource = _resource(request)
        queued = self._queued.get((request.method, resource))
        if queued:
            return queued.pop(0)
        if resource == "connections":
            return httpx.Response(200, json=self.connections)
        if resource == "Organisation":
            return httpx.Response(200, json={"Organisations": [{"Name": "Demo Club"}]})
        if resource == "Contacts":
            return self._contacts(request)
        if resource == "Contact":
            return self._update_contact(request)
        body = json.loads(request.content or b"{}")
        if resource == "Invoices":
            invoice = {**body["Invoices"][0]}
            number = next(self._ids)
            invoice.update({"InvoiceID": f"invoice-{number}", "InvoiceNumber": f"INV-{number:04d}"})
            self.invoices.append(invoice)
            return httpx.Response(200, json={"Invoices": [invoice]})
        if resource == "Payments":
            payment = {**body["Payments"][0], "PaymentID": f"payment-{next(self._ids)}"}
            self.payments.append(payment)
            return httpx.Response(200, json={"Payments": [payment]})
        if resource == "CreditNotes":
            number = next(self._ids)
            credit_note = {
                **body["CreditNotes"][0],
                "CreditNoteID": f"credit-{number}",
                "CreditNoteNumber": f"CN-{number:04d}",
            }
            self.credit_notes.append(credit_note)
            return httpx.Response(200, json={"CreditNotes": [credit_note]})
        return httpx.Response(404, json={"Message": "not found"})

    def _contacts(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            match = WHERE_RE.match(request.url.params.get("where", ""))
            if match is None:
                return httpx.Response(200, json={"Contacts": list(self.contacts)})
            field, value = match.group("field"), match.group("value").replace('\\"', '"')
            found = [contact for contact in self.contacts if contact.get(field) == value]
            return httpx.Response(200, json={"Contacts": found})
        payload = json.loads(request.content)["Contacts"][0]
        if any(contact["Name"] == payload["Name"] for contact in self.contacts):
            return httpx.Response(
                400,
                json={
                    "Elements": [
                        {
                            "ValidationErrors": [
                                {"Message": f"The contact name {payload['Name']} is already assigned to another contact."}
                            ]
                        }
                    ]
                },
            )
        contact = self.add_contact(payload["Name"], email=payload.get("EmailAddress"))
        return httpx.Response(200, json={"Contacts": [contact]})

    def _update_contact(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)["Contacts"][0]
        for contact in self.contacts:
            if contact["ContactID"] == payload["ContactID"]:
                contact.update(payload)
                return httpx.Response(200, json={"Contacts": [contact]})
        return httpx.Response(404, json={"Message": "contact not found"})

    def handle_token(self, request: httpx.Request) -> httpx.Response:
        self.token_requests.append(dict(httpx.QueryParams(request.content.decode())))
        if self._token_queue:
            return self._token_queue.pop(0)
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{next(self._ids)}",
                "refresh_token": f"refresh-{next(self._ids)}",
                "expires_in": 1800,
                "scope": "offline_access accounting.transactions",
            },
        )


def _resource(request: httpx.Request) -> str:
    parts = [part for part in request.url.path.split("/") if part]
    if not parts:
        return ""
    if parts[-1] == "connections":
        return "connections"
    if len(parts) >= 2 and parts[-2] == "Contacts":
        return "Contact"
    return parts[-1]


def rate_limited_response() -> httpx.Response:
    return httpx.Response(429, headers={"X-Rate-Limit-Problem": "minute"}, json={"Title": "Too Many Requests"})


def validation_error_response(message: str) -> httpx.Response:
    return httpx.Response(400, json={"Elements": [{"ValidationErrors": [{"Message": message}]}]})


async def seed_token(
    session,
    *,
    tenant_id: str = TENANT_ID,
    access_expires_in: timedelta = timedelta(minutes=30),
    issued_at: datetime | None = None,
    is_active: bool = True,
) -> XeroOAuthToken:
    issued_at = issued_at or datetime.now(tz=timezone.utc)
    token = XeroOAuthToken(
        tenant_id=tenant_id,
        tenant_name="Demo Club",
        access_token="access-seed",
        refresh_token="refresh-seed",
        expires_at=issued_at + access_expires_in,
        is_active=is_active,
        created_at=issued_at,
        updated_at=issued_at,
    )
    session.add(token)
    await session.commit()
    return token


async def seed_member(
    session,
    *,
    first_name: str = "Jane",
    last_name: str = "Doe",
    email: str | None = "jane@example.com",
    member_number: str | None = "M100",
) -> Member:
    member = Member(
        member_uuid=uuid.uuid4(),
        first_name=first_name,
        last_name=last_name,
        email=email,
        member_number=member_number,
    )
    session.add(member)
    await session.commit()
    return member


async def seed_member_payment(
    session,
    member: Member,
    *,
    total_amount: int = 5000,
    discount_amount: int = 0,
    status: str = member_statuses.PAYMENT_STATUS_COMPLETED,
    processor_reference: str | None = "pi_test_123",
) -> MemberPayment:
    payment = MemberPayment(
        payment_id=uuid.uuid4(),
        member_uuid=member.member_uuid,
        status=status,
        processor_reference=processor_reference,
        total_amount=total_amount,
        discount_amount=discount_amount,
        final_amount=total_amount - discount_amount,
    )
    session.add(payment)
    await session.commit()
    return payment
