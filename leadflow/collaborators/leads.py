"""Lead store adapters.

The engine reads lead status and contact timestamps and writes status changes
and email-send bookkeeping. Leads themselves are owned elsewhere.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Protocol

import httpx

from ..contracts import Lead

logger = logging.getLogger(__name__)

INTERACTION_FIELDS = {
    "opened": "email_opened_at",
    "clicked": "email_clicked_at",
    "replied": "email_replied_at",
}


class LeadStore(Protocol):
    async def list_leads(self, owner: str) -> List[Lead]:
        """Return the lead population of ``owner``."""

    async def get_lead(self, lead_id: str) -> Lead | None:
        """Return one lead or ``None`` when it does not exist."""

    async def update_status(self, lead_id: str, status: str) -> Optional[str]:
        """Set ``contact_status`` and return the previous value."""

    async def record_email_sent(self, lead_id: str, at: datetime) -> None:
        """Stamp ``last_contacted_at`` after a successful send."""


class InMemoryLeadStore:
    """Lead store kept in a dict, for tests and local runs."""

    def __init__(self, leads: Optional[List[Lead]] = None) -> None:
        self._leads: Dict[str, Lead] = {}
        self._lock = asyncio.Lock()
        for lead in leads or []:
            self.add(lead)

    def add(self, lead: Lead) -> None:
        self._leads[lead.id] = lead.model_copy(deep=True)

    def remove(self, lead_id: str) -> None:
        self._leads.pop(lead_id, None)

    async def list_leads(self, owner: str) -> List[Lead]:
        return [
            lead.model_copy(deep=True)
            for lead in self._leads.values()
            if lead.owner == owner
        ]

    async def get_lead(self, lead_id: str) -> Lead | None:
        lead = self._leads.get(lead_id)
        return lead.model_copy(deep=True) if lead else None

    async def update_status(self, lead_id: str, status: str) -> Optional[str]:
        async with self._lock:
            lead = self._leads.get(lead_id)
            if lead is None:
                raise KeyError(lead_id)
            old_status = lead.contact_status
            lead.contact_status = status
            return old_status

    async def record_email_sent(self, lead_id: str, at: datetime) -> None:
        async with self._lock:
            lead = self._leads.get(lead_id)
            if lead is None:
                raise KeyError(lead_id)
            lead.last_contacted_at = at

    async def record_interaction(self, lead_id: str, kind: str, at: datetime) -> None:
        """Record an engagement signal (``opened``, ``clicked`` or ``replied``)."""
        field = INTERACTION_FIELDS[kind]
        async with self._lock:
            lead = self._leads[lead_id]
            setattr(lead, field, at)
            lead.last_interaction_at = at


class RestLeadStore:
    """Lead store backed by a JSON HTTP API.

    Endpoints, relative to ``base_url``:

    * ``GET /leads?owner=<owner>`` returns a list of leads
    * ``GET /leads/<id>`` returns one lead, 404 when missing
    * ``PATCH /leads/<id>`` applies a partial update
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def list_leads(self, owner: str) -> List[Lead]:
        async with self._client() as client:
            response = await client.get("/leads", params={"owner": owner})
            response.raise_for_status()
        return [Lead.model_validate(item) for item in response.json()]

    async def get_lead(self, lead_id: str) -> Lead | None:
        async with self._client() as client:
            response = await client.get(f"/leads/{lead_id}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
        return Lead.model_validate(response.json())

    async def update_status(self, lead_id: str, status: str) -> Optional[str]:
        lead = await self.get_lead(lead_id)
        if lead is None:
            raise KeyError(lead_id)
        async with self._client() as client:
            response = await client.patch(
                f"/leads/{lead_id}", json={"contact_status": status}
            )
            response.raise_for_status()
        logger.debug(f"Lead {lead_id} status {lead.contact_status} -> {status}")
        return lead.contact_status

    async def record_email_sent(self, lead_id: str, at: datetime) -> None:
        async with self._client() as client:
            response = await client.patch(
                f"/leads/{lead_id}", json={"last_contacted_at": at.isoformat()}
            )
            response.raise_for_status()
