# meevo.py
import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN_SECONDS = 300

# ============================================================
# PHONE
# ============================================================

def normalize_phone(phone: Optional[str]) -> str:
    """
    '+1 (602) 555-0100' -> '6025550100'
    Only an 11-digit number with a leading 1 loses its country code.
    """
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits

# ============================================================
# UPSTREAM MODELS
# ============================================================

class MeevoClientRecord(BaseModel):
    """Customer record as returned by the listing and detail endpoints."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    client_id: Optional[str] = Field(None, alias="clientId")
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    primary_phone: Optional[str] = Field(None, alias="primaryPhoneNumber")
    email: Optional[str] = Field(None, alias="emailAddress")
    guardian_id: Optional[str] = Field(None, alias="guardianId")
    is_minor: bool = Field(False, alias="isMinor")

    @field_validator("client_id", "guardian_id", "primary_phone", mode="before")
    @classmethod
    def _as_str(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)

    @field_validator("is_minor", mode="before")
    @classmethod
    def _minor_default(cls, v: Any) -> Any:
        return False if v is None else v

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


@dataclass
class PageResult:
    """One listing page. `error` is set when the fetch failed (clients is then empty)."""
    page: int
    clients: List[MeevoClientRecord] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.clients


@dataclass
class DetailResult:
    client_id: str
    record: Optional[MeevoClientRecord] = None
    error: Optional[str] = None

# ============================================================
# TOKEN CACHE
# ============================================================

class TokenCache:
    """
    Process-wide bearer token for the Meevo public API.

    A token is reused until it is within TOKEN_REFRESH_MARGIN_SECONDS of its
    expiry. Refreshes are serialized so concurrent lookups share one exchange.
    """

    def __init__(
        self,
        auth_url: str,
        client_id: str,
        client_secret: str,
        clock: Callable[[], float] = time.time,
    ):
        self.auth_url = auth_url
        self.client_id = client_id
        self.client_secret = client_secret
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def expires_at(self) -> Optional[float]:
        return self._expires_at

    def _is_fresh(self) -> bool:
        if not self._token or self._expires_at is None:
            return False
        return self._clock() < self._expires_at - TOKEN_REFRESH_MARGIN_SECONDS

    async def get_token(self, http: httpx.AsyncClient) -> str:
        if self._is_fresh():
            return self._token
        async with self._lock:
            # another task may have refreshed while we waited
            if self._is_fresh():
                return self._token
            await self._refresh(http)
            return self._token

    async def _refresh(self, http: httpx.AsyncClient) -> None:
        r = await http.post(self.auth_url, json={
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        })
        r.raise_for_status()
        body = r.json()
        token = body.get("access_token")
        if not token:
            raise ValueError("Meevo token response did not include an access_token")
        self._token = token
        self._expires_at = self._clock() + float(body.get("expires_in") or 0)
        logger.info("Meevo access token refreshed, expires in %ss", body.get("expires_in"))

# ============================================================
# API CLIENT
# ============================================================

def _unwrap(body: Any) -> Any:
    # Meevo wraps most payloads in {"data": ...} but not all of them
    if isinstance(body, dict) and body.get("data") is not None:
        return body["data"]
    return body


class MeevoClient:
    """Read-only view of the Meevo public API for one tenant/location and one bearer token."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        token: str,
        api_url: str,
        tenant_id: str,
        location_id: str,
    ):
        self.http = http
        self.api_url = api_url.rstrip("/")
        self.tenant_id = tenant_id
        self.location_id = location_id
        self.headers = {"Authorization": f"Bearer {token}"}

    async def list_clients(self, page: int, items_per_page: int, timeout: Optional[float] = None) -> PageResult:
        """Fetch one listing page; failures come back as an empty PageResult with `error` set."""
        params = {
            "tenantid": self.tenant_id,
            "locationid": self.location_id,
            "PageNumber": page,
            "ItemsPerPage": items_per_page,
        }
        try:
            r = await self.http.get(
                f"{self.api_url}/clients",
                params=params,
                headers=self.headers,
                **_timeout_kwargs(timeout),
            )
            r.raise_for_status()
            body = r.json()
            raw = body.get("data") if isinstance(body, dict) else None
            clients = [MeevoClientRecord.model_validate(c) for c in (raw or [])]
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.debug("Listing page %s failed: %s", page, e)
            return PageResult(page=page, error=str(e) or type(e).__name__)
        return PageResult(page=page, clients=clients)

    async def get_client(self, client_id: str, timeout: Optional[float] = None) -> DetailResult:
        params = {"TenantId": self.tenant_id, "LocationId": self.location_id}
        try:
            r = await self.http.get(
                f"{self.api_url}/client/{client_id}",
                params=params,
                headers=self.headers,
                **_timeout_kwargs(timeout),
            )
            r.raise_for_status()
            data = _unwrap(r.json())
            if not isinstance(data, dict):
                return DetailResult(client_id=client_id, error="unexpected detail payload")
            record = MeevoClientRecord.model_validate(data)
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.debug("Detail lookup for %s failed: %s", client_id, e)
            return DetailResult(client_id=client_id, error=str(e) or type(e).__name__)
        return DetailResult(client_id=client_id, record=record)

    async def get_booked_services(self, client_id: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Raw booked-service entries for a client. Errors propagate to the caller."""
        params = {"TenantId": self.tenant_id, "LocationId": self.location_id}
        r = await self.http.get(
            f"{self.api_url}/book/client/{client_id}/services",
            params=params,
            headers=self.headers,
            **_timeout_kwargs(timeout),
        )
        r.raise_for_status()
        data = _unwrap(r.json())
        if not isinstance(data, list):
            return []
        return [e for e in data if isinstance(e, dict)]


def _timeout_kwargs(timeout: Optional[float]) -> Dict[str, Any]:
    # leave the client's default in place when no per-call timeout is given
    return {"timeout": timeout} if timeout is not None else {}
