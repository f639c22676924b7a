from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any

from attachments_backend.errors import InfrastructureError
from attachments_backend.integrations.peer_services import (
    ActionAuthorizer,
    AttachmentReader,
    PeerServiceError,
)

logger = logging.getLogger(__name__)

EDIT_ACTION = "attachments:edit"


class Decision(enum.Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class Found:
    resource: dict[str, Any]


@dataclass(frozen=True)
class Missing:
    attachment_id: str


FetchResult = Found | Missing


async def fetch_by_id(reader: AttachmentReader, attachment_id: str) -> FetchResult:
    """Found / Missing; read-path failures raise InfrastructureError."""
    try:
        doc = await reader.get_attachment(attachment_id)
    except PeerServiceError as e:
        logger.warning("attachment read failed id=%s: %s", attachment_id, e)
        raise InfrastructureError() from e
    if not doc:
        return Missing(attachment_id=attachment_id)
    return Found(resource=doc)


async def authorize(
    authorizer: ActionAuthorizer,
    *,
    consumer_token: str | None,
    action: str,
    context: dict[str, Any],
) -> Decision:
    """Ask the authorization service; an explicit "no" is DENY, never an error."""
    try:
        can = await authorizer.user_can(consumer_token=consumer_token, what=action, context=context)
    except PeerServiceError as e:
        logger.warning("authorization request failed action=%s: %s", action, e)
        raise InfrastructureError() from e
    return Decision.ALLOW if can else Decision.DENY


async def authorize_edit(
    authorizer: ActionAuthorizer, *, consumer_token: str | None, resource: dict[str, Any]
) -> Decision:
    # The subject of the check is always the stored owner, never the caller.
    return await authorize(
        authorizer,
        consumer_token=consumer_token,
        action=EDIT_ACTION,
        context={"owner": resource.get("userId")},
    )
