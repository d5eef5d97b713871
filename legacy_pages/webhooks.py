"""
Identity-provider webhook: signature verification and user lifecycle sync.

Deliveries are signed by svix (``svix-id``, ``svix-timestamp`` and
``svix-signature`` headers) with a ``whsec_`` secret.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from pydantic import ValidationError
from svix.webhooks import Webhook, WebhookVerificationError

from legacy_pages.db import DbClient
from legacy_pages.schemas import IdentityEvent, IdentityUserData, UserResponse
from legacy_pages.service import PageService

logger = logging.getLogger(__name__)

USER_SYNC_EVENTS = ("user.created", "user.updated")


def verify_webhook(secret: Optional[str], headers: Mapping[str, str], body: bytes) -> dict:
    """Return the decoded payload of a correctly signed delivery."""
    if not secret:
        raise WebhookVerificationError("webhook secret is not configured")
    try:
        webhook = Webhook(secret)
    except ValueError as exc:
        raise WebhookVerificationError("webhook secret is not valid base64") from exc
    try:
        return webhook.verify(body, dict(headers.items()))
    except WebhookVerificationError:
        raise
    except ValueError as exc:
        raise WebhookVerificationError("payload is not JSON") from exc


def parse_identity_event(payload: Any) -> IdentityEvent:
    """
    Validate a verified payload. User sync events must carry usable user
    data, otherwise they could never be applied and are rejected up front.
    """
    try:
        event = IdentityEvent.model_validate(payload)
        if event.type in USER_SYNC_EVENTS:
            IdentityUserData.model_validate(event.data)
    except ValidationError as exc:
        raise WebhookVerificationError(f"malformed event payload: {exc}") from exc
    return event


def _display_name(user: IdentityUserData) -> tuple[str, str]:
    email = user.email_addresses[0].email_address if user.email_addresses else ""
    name = user.first_name or email.split("@")[0]
    return name, email


def handle_identity_event(
    event: IdentityEvent, db: DbClient, pages: PageService
) -> tuple[int, Any]:
    """Apply a user lifecycle event. Returns the status code and response body."""
    if event.type in USER_SYNC_EVENTS:
        data = IdentityUserData.model_validate(event.data)
        name, email = _display_name(data)
        user = db.upsert_user(data.id, name=name, email=email)
        logger.info("Synced user %s from %s", user.id, event.type)
        status = 201 if event.type == "user.created" else 200
        return status, UserResponse(id=user.id, name=user.name, email=user.email).model_dump()

    if event.type == "user.deleted":
        external_id = event.data.get("id")
        user = db.get_user_by_external_id(external_id) if external_id else None
        if user:
            pages.delete_pages_for_user(user.id)
            db.delete_user(external_id)
            logger.info("Deleted user %s", user.id)
        return 200, {"message": "User deleted"}

    logger.info("Ignoring webhook event %s", event.type)
    return 200, {"message": "Webhook received"}
