import re
import uuid
from datetime import datetime, timezone

import pytest
import sqlalchemy as sa

from tests.xero_fakes import TENANT_ID, rate_limited_response, seed_member, validation_error_response
from xerosync.domain.xero import statuses
from xerosync.domain.xero.client import XeroClient
from xerosync.domain.xero.contacts_service import choose_email_match, contact_name, resolve_contact
from xerosync.domain.xero.db_models import XeroContactLink, XeroSyncLog

BASE_URL = "https://api.xero.com/api.xro/2.0"
FIXED_NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _client(fake_xero) -> XeroClient:
    return XeroClient("access-test", TENANT_ID, base_url=BASE_URL, transport=fake_xero.transport)


async def _link(session, member_uuid) -> XeroContactLink | None:
    return await session.scalar(sa.select(XeroContactLink).where(XeroContactLink.member_uuid == member_uuid))


@pytest.mark.anyio
async def test_creates_contact_and_caches_link(async_session_maker, fake_xero):
    async with async_session_maker() as session:
        member = await seed_member(session)
        async with _client(fake_xero) as client:
            result = await resolve_contact(session, client, member.member_uuid)
            await session.commit()
            again = await resolve_contact(session, client, member.member_uuid)

    assert result.success is True
    assert again.external_id == result.external_id
    assert len(fake_xero.calls("PUT", "Contacts")) == 1
    assert fake_xero.contacts[0]["Name"] == "Jane Doe - M100"
    # The cached link short-circuits: only the first resolution searched Xero.
    assert len(fake_xero.calls("GET", "Contacts")) == 2

    async with async_session_maker() as session:
        link = await _link(session, member.member_uuid)
        assert link.sync_status == statuses.CONTACT_STATUS_SYNCED
        assert link.external_contact_id == result.external_id
        assert link.tenant_id == TENANT_ID
        log = await session.scalar(sa.select(XeroSyncLog))
        assert log.operation_type == statuses.OPERATION_CONTACT_SYNC
        assert log.success is True
        assert log.external_id == result.external_id


@pytest.mark.anyio
async def test_existing_contact_found_by_name(async_session_maker, fake_xero):
    existing = fake_xero.add_contact("Jane Doe - M100")
    async with async_session_maker() as session:
        member = await seed_member(session)
        async with _client(fake_xero) as client:
            result = await resolve_contact(session, client, member.member_uuid)

    assert result.external_id == existing["ContactID"]
    assert fake_xero.calls("PUT", "Contacts") == []


@pytest.mark.anyio
async def test_archived_contact_is_renamed_and_replaced(async_session_maker, fake_xero):
    archived = fake_xero.add_contact("Jane Doe - M100", email="jane@example.com", status="ARCHIVED")
    async with async_session_maker() as session:
        member = await seed_member(session)
        async with _client(fake_xero) as client:
            result = await resolve_contact(session, client, member.member_uuid)

    assert result.success is True
    assert result.external_id != archived["ContactID"]
    assert archived["Name"] == "Jane Doe - M100 - Archived"
    assert len(fake_xero.calls("POST", "Contact")) == 1
    # Email lookup would find the archived contact again, so it is skipped.
    assert len(fake_xero.calls("GET", "Contacts")) == 1
    assert fake_xero.contacts[-1]["Name"] == "Jane Doe - M100"


@pytest.mark.anyio
async def test_same_name_members_get_distinct_contacts(async_session_maker, fake_xero):
    async with async_session_maker() as session:
        first = await seed_member(session, email="jane.one@example.com", member_number="M1")
        second = await seed_member(session, email="jane.two@example.com", member_number="M2")
        async with _client(fake_xero) as client:
            first_result = await resolve_contact(session, client, first.member_uuid)
            second_result = await resolve_contact(session, client, second.member_uuid)

    assert first_result.success and second_result.success
    assert first_result.external_id != second_result.external_id
    assert [contact["Name"] for contact in fake_xero.contacts] == ["Jane Doe - M1", "Jane Doe - M2"]


@pytest.mark.anyio
async def test_same_name_members_sharing_email_reuse_one_contact(async_session_maker, fake_xero):
    # A shared email falls through to the partial-name match, so both members land on one contact.
    async with async_session_maker() as session:
        first = await seed_member(session, member_number="M1")
        second = await seed_member(session, member_number="M2")
        async with _client(fake_xero) as client:
            first_result = await resolve_contact(session, client, first.member_uuid)
            second_result = await resolve_contact(session, client, second.member_uuid)

    assert second_result.external_id == first_result.external_id
    assert len(fake_xero.calls("PUT", "Contacts")) == 1


@pytest.mark.anyio
async def test_contact_found_by_email_when_name_differs(async_session_maker, fake_xero):
    existing = fake_xero.add_contact("J. Doe", email="jane@example.com")
    async with async_session_maker() as session:
        member = await seed_member(session)
        async with _client(fake_xero) as client:
            result = await resolve_contact(session, client, member.member_uuid)
        await session.commit()

    assert result.external_id == existing["ContactID"]
    assert fake_xero.calls("PUT", "Contacts") == []
    async with async_session_maker() as session:
        link = await _link(session, member.member_uuid)
        assert link.contact_name == "J. Doe"


@pytest.mark.anyio
async def test_name_collision_without_member_number_uses_email_local_part(async_session_maker, fake_xero):
    fake_xero.queue(
        "PUT",
        "Contacts",
        validation_error_response("The contact name Jane Doe is already assigned to another contact."),
    )
    async with async_session_maker() as session:
        member = await seed_member(session, member_number=None)
        async with _client(fake_xero) as client:
            result = await resolve_contact(session, client, member.member_uuid)

    assert result.success is True
    assert len(fake_xero.calls("PUT", "Contacts")) == 2
    assert fake_xero.contacts[-1]["Name"] == "Jane Doe (jane)"


@pytest.mark.anyio
async def test_name_collision_with_member_number_appends_suffix(async_session_maker, fake_xero):
    fake_xero.queue(
        "PUT",
        "Contacts",
        validation_error_response("The contact name Jane Doe - M100 is already assigned to another contact."),
    )
    async with async_session_maker() as session:
        member = await seed_member(session)
        async with _client(fake_xero) as client:
            result = await resolve_contact(session, client, member.member_uuid, clock=lambda: FIXED_NOW)

    assert result.success is True
    assert re.fullmatch(r"Jane Doe - M100 \d{6}", fake_xero.contacts[-1]["Name"])


@pytest.mark.anyio
async def test_rate_limited_lookup_is_deferred_without_link(async_session_maker, fake_xero):
    fake_xero.queue("GET", "Contacts", rate_limited_response())
    async with async_session_maker() as session:
        member = await seed_member(session)
        async with _client(fake_xero) as client:
            result = await resolve_contact(session, client, member.member_uuid)
        await session.commit()

    assert result.success is False
    assert result.rate_limited is True
    assert result.retryable is True
    async with async_session_maker() as session:
        assert await _link(session, member.member_uuid) is None
        assert await session.scalar(sa.select(sa.func.count()).select_from(XeroSyncLog)) == 0


@pytest.mark.anyio
async def test_structural_create_failure_records_failed_link(async_session_maker, fake_xero):
    fake_xero.queue("PUT", "Contacts", validation_error_response("Email address must be valid."))
    async with async_session_maker() as session:
        member = await seed_member(session)
        async with _client(fake_xero) as client:
            result = await resolve_contact(session, client, member.member_uuid)
        await session.commit()

    assert result.success is False
    assert result.retryable is False
    assert "Email address must be valid." in result.error
    async with async_session_maker() as session:
        link = await _link(session, member.member_uuid)
        assert link.sync_status == statuses.CONTACT_STATUS_FAILED
        assert link.external_contact_id is None
        log = await session.scalar(sa.select(XeroSyncLog))
        assert log.success is False


@pytest.mark.anyio
async def test_unknown_member(async_session_maker, fake_xero):
    async with async_session_maker() as session:
        async with _client(fake_xero) as client:
            result = await resolve_contact(session, client, uuid.uuid4())

    assert result.error == "member_not_found"
    assert fake_xero.requests == []


def test_contact_name_includes_member_number():
    class _Member:
        first_name = "Sam"
        last_name = "Lee"
        member_number = None

    assert contact_name(_Member()) == "Sam Lee"
    _Member.member_number = "M7"
    assert contact_name(_Member()) == "Sam Lee - M7"


def test_email_match_preference_order():
    exact = {"ContactID": "1", "Name": "Jane Doe - M100"}
    partial = {"ContactID": "2", "Name": "Mrs Jane Doe"}
    active = {"ContactID": "3", "Name": "Household", "ContactStatus": "ACTIVE"}
    archived = {"ContactID": "4", "Name": "Old", "ContactStatus": "ARCHIVED"}
    kwargs = {"exact_name": "Jane Doe - M100", "first_name": "Jane", "last_name": "Doe"}

    assert choose_email_match([archived, active, partial, exact], **kwargs) is exact
    assert choose_email_match([archived, active, partial], **kwargs) is partial
    assert choose_email_match([archived, active], **kwargs) is active
    assert choose_email_match([archived], **kwargs) is archived
    assert choose_email_match([], **kwargs) is None
