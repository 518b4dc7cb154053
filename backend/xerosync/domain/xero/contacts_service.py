from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from xerosync.domain.members.db_models import Member
from xerosync.domain.xero import statuses
from xerosync.domain.xero.client import XeroApiError, XeroClient
from xerosync.domain.xero.db_models import XeroContactLink
from xerosync.domain.xero.payloads import build_contact_payload
from xerosync.domain.xero.sync_log import record_sync_log
from xerosync.infra.logging import SyncEvent, log_sync_event
from xerosync.shared.clock import utcnow

logger = logging.getLogger(__name__)

ARCHIVED = "ARCHIVED"
NAME_COLLISION_MARKER = "already assigned"


@dataclass(frozen=True)
class ContactResult:
    success: bool
    external_id: str | None = None
    error: str | None = None
    rate_limited: bool = False
    transient: bool = False

    @property
    def retryable(self) -> bool:
        return self.rate_limited or self.transient


def contact_name(member: Member) -> str:
    base = f"{member.first_name} {member.last_name}".strip()
    if member.member_number:
        return f"{base} - {member.member_number}"
    return base


def _disambiguated_name(member: Member, name: str, now: datetime) -> str:
    if not member.member_number and member.email:
        local_part = member.email.split("@", 1)[0]
        return f"{name} ({local_part})"
    suffix = str(int(now.timestamp() * 1000))[-6:]
    return f"{name} {suffix}"


def _is_archived(contact: dict) -> bool:
    return (contact.get("ContactStatus") or "").upper() == ARCHIVED


def choose_email_match(contacts: list[dict], *, exact_name: str, first_name: str, last_name: str) -> dict | None:
    """Pick one contact among several sharing an email address.

    Preference: exact name, then first+last name, then any active contact, then
    the first result. Each step down is logged since a wrong pick misattributes
    invoices.
    """
    if not contacts:
        return None
    for contact in contacts:
        if contact.get("Name") == exact_name:
            return contact

    logger.warning("xero_contact_email_match_no_exact_name", extra={"extra": {"candidates": len(contacts)}})
    partial = f"{first_name} {last_name}".strip().lower()
    for contact in contacts:
        if partial and partial in (contact.get("Name") or "").lower():
            return contact

    logger.warning("xero_contact_email_match_no_partial_name", extra={"extra": {"candidates": len(contacts)}})
    for contact in contacts:
        if not _is_archived(contact):
            return contact

    logger.warning("xero_contact_email_match_first_result", extra={"extra": {"candidates": len(contacts)}})
    return contacts[0]


async def _rename_archived(client: XeroClient, contact: dict, name: str) -> None:
    archived_name = f"{name} - Archived"
    await client.update_contact(contact["ContactID"], {"Name": archived_name})
    logger.warning(
        "xero_archived_contact_renamed",
        extra={"extra": {"contact_id": contact["ContactID"], "tenant_id": client.tenant_id}},
    )


async def _create_contact(client: XeroClient, member: Member, name: str, now: datetime) -> dict:
    payload = build_contact_payload(
        name=name,
        first_name=member.first_name,
        last_name=member.last_name,
        email=member.email,
        member_number=member.member_number,
    )
    try:
        return await client.create_contact(payload)
    except XeroApiError as exc:
        if exc.retryable or NAME_COLLISION_MARKER not in (exc.detail or "").lower():
            raise
        retry_name = _disambiguated_name(member, name, now)
        logger.warning(
            "xero_contact_name_collision",
            extra={"extra": {"member_uuid": str(member.member_uuid), "tenant_id": client.tenant_id}},
        )
        return await client.create_contact({**payload, "Name": retry_name})


async def _find_or_create(client: XeroClient, member: Member, now: datetime) -> tuple[str, str]:
    name = contact_name(member)
    archived_renamed = False
    for contact in await client.find_contacts_by_name(name):
        if contact.get("Name") != name:
            continue
        if _is_archived(contact):
            await _rename_archived(client, contact, name)
            archived_renamed = True
            continue
        return contact["ContactID"], name

    if not archived_renamed and member.email:
        matches = await client.find_contacts_by_email(member.email)
        chosen = choose_email_match(
            matches, exact_name=name, first_name=member.first_name, last_name=member.last_name
        )
        if chosen is not None and chosen.get("ContactID"):
            return chosen["ContactID"], chosen.get("Name") or name

    created = await _create_contact(client, member, name, now)
    contact_id = created.get("ContactID")
    if not contact_id:
        raise XeroApiError("xero_contact_create_missing_id")
    return contact_id, created.get("Name") or name


async def _upsert_link(
    session: AsyncSession,
    *,
    member_uuid: uuid.UUID,
    tenant_id: str,
    sync_status: str,
    now: datetime,
    external_contact_id: str | None = None,
    contact_name_value: str | None = None,
    error: str | None = None,
) -> XeroContactLink:
    link = await session.scalar(
        sa.select(XeroContactLink).where(
            XeroContactLink.member_uuid == member_uuid,
            XeroContactLink.tenant_id == tenant_id,
        )
    )
    if link is None:
        link = XeroContactLink(member_uuid=member_uuid, tenant_id=tenant_id, sync_status=sync_status)
        session.add(link)
    link.sync_status = sync_status
    link.sync_error = error
    link.last_synced_at = now
    if external_contact_id:
        link.external_contact_id = external_contact_id
        link.contact_name = contact_name_value
    return link


async def resolve_contact(
    session: AsyncSession,
    client: XeroClient,
    member_uuid: uuid.UUID,
    *,
    clock: Callable[[], datetime] = utcnow,
) -> ContactResult:
    """Find or create the Xero contact for a member.

    Never raises for Xero errors. The contact link is added to the session and
    the caller owns the commit.
    """
    tenant_id = client.tenant_id
    member = await session.get(Member, member_uuid)
    if member is None:
        return ContactResult(success=False, error="member_not_found")

    link = await session.scalar(
        sa.select(XeroContactLink).where(
            XeroContactLink.member_uuid == member_uuid,
            XeroContactLink.tenant_id == tenant_id,
        )
    )
    if link is not None and link.sync_status == statuses.CONTACT_STATUS_SYNCED and link.external_contact_id:
        return ContactResult(success=True, external_id=link.external_contact_id)

    now = clock()
    try:
        contact_id, name = await _find_or_create(client, member, now)
    except XeroApiError as exc:
        if exc.retryable:
            log_sync_event(
                logger,
                SyncEvent(
                    event="xero_contact_deferred",
                    entity_type=statuses.ENTITY_CONTACT,
                    entity_id=str(member_uuid),
                    tenant_id=tenant_id,
                    outcome="rate_limited" if exc.rate_limited else "transient_error",
                    error=exc.message,
                ),
                level=logging.WARNING,
            )
            return ContactResult(
                success=False, error=exc.message, rate_limited=exc.rate_limited, transient=exc.transient
            )
        await _upsert_link(
            session,
            member_uuid=member_uuid,
            tenant_id=tenant_id,
            sync_status=statuses.CONTACT_STATUS_FAILED,
            now=now,
            error=exc.message,
        )
        record_sync_log(
            session,
            tenant_id=tenant_id,
            operation_type=statuses.OPERATION_CONTACT_SYNC,
            entity_type=statuses.ENTITY_CONTACT,
            entity_id=member_uuid,
            success=False,
            error_message=exc.message,
            response_data=exc.payload,
            now=now,
        )
        log_sync_event(
            logger,
            SyncEvent(
                event="xero_contact_failed",
                entity_type=statuses.ENTITY_CONTACT,
                entity_id=str(member_uuid),
                tenant_id=tenant_id,
                outcome="failed",
                error=exc.message,
            ),
            level=logging.WARNING,
        )
        return ContactResult(success=False, error=exc.message)

    await _upsert_link(
        session,
        member_uuid=member_uuid,
        tenant_id=tenant_id,
        sync_status=statuses.CONTACT_STATUS_SYNCED,
        now=now,
        external_contact_id=contact_id,
        contact_name_value=name,
    )
    record_sync_log(
        session,
        tenant_id=tenant_id,
        operation_type=statuses.OPERATION_CONTACT_SYNC,
        entity_type=statuses.ENTITY_CONTACT,
        entity_id=member_uuid,
        success=True,
        external_id=contact_id,
        now=now,
    )
    log_sync_event(
        logger,
        SyncEvent(
            event="xero_contact_resolved",
            entity_type=statuses.ENTITY_CONTACT,
            entity_id=str(member_uuid),
            tenant_id=tenant_id,
            outcome="synced",
            fields={"external_id": contact_id},
        ),
    )
    return ContactResult(success=True, external_id=contact_id)
