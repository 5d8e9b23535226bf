"""Outbound email delivery."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

import httpx

from ..contracts import EmailDraft, Lead
from ..errors import DeliveryFailed, SenderNotConfigured

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    async def send(self, owner: str, lead: Lead, draft: EmailDraft) -> None:
        """Deliver ``draft`` to ``lead`` on behalf of ``owner``.

        Raises ``SenderNotConfigured`` when the owner has no sender and
        ``DeliveryFailed`` when the channel rejects the message.
        """


@dataclass
class SentEmail:
    owner: str
    lead_id: str
    to: str
    subject: str
    body: str


class InMemoryEmailSender:
    """Records messages instead of sending them."""

    def __init__(self, senders: Optional[Dict[str, str]] = None) -> None:
        # None means every owner may send
        self.senders = senders
        self.sent: List[SentEmail] = []

    async def send(self, owner: str, lead: Lead, draft: EmailDraft) -> None:
        if self.senders is not None and owner not in self.senders:
            raise SenderNotConfigured(owner)
        self.sent.append(
            SentEmail(
                owner=owner,
                lead_id=lead.id,
                to=lead.email or "",
                subject=draft.subject,
                body=draft.body,
            )
        )


class HttpEmailSender:
    """Post messages to a JSON delivery endpoint.

    ``senders`` maps an owner to the from-address used for that owner's
    outreach; owners without an entry cannot send.
    """

    def __init__(
        self,
        endpoint: str,
        senders: Dict[str, str],
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint
        self.senders = senders
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def send(self, owner: str, lead: Lead, draft: EmailDraft) -> None:
        sender = self.senders.get(owner)
        if not sender:
            raise SenderNotConfigured(owner)

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {
            "from": sender,
            "to": lead.email,
            "lead_id": lead.id,
            "subject": draft.subject,
            "body": draft.body,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.endpoint, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryFailed(f"Delivery to {lead.email} failed: {e}") from e
        logger.debug(f"Delivered email to lead {lead.id} from {sender}")
