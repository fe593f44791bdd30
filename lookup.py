# lookup.py
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, time as dtime
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar
from zoneinfo import ZoneInfo

import httpx
from pydantic import BaseModel, Field

from meevo import MeevoClient, MeevoClientRecord, PageResult, normalize_phone

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_FOUND_MESSAGE = "No client found with that phone number or email"

# ============================================================
# SEARCH POLICY
# ============================================================

@dataclass(frozen=True)
class SearchLimits:
    """Fan-out sizes, page budgets and timeouts for one lookup."""

    pages_per_batch: int = 10
    items_per_page: int = 100
    max_batches: int = 20
    # most recent pages first; new dependent profiles are usually created recently
    linked_page_ranges: Tuple[Tuple[int, int], ...] = ((150, 200), (100, 150), (50, 100), (1, 50))
    linked_batch_size: int = 10
    detail_batch_size: int = 50
    empty_page_limit: int = 10
    page_concurrency: int = 10
    detail_concurrency: int = 50
    search_page_timeout: Optional[float] = 30.0
    linked_page_timeout: Optional[float] = 3.0
    detail_timeout: Optional[float] = 2.0
    appointment_timeout: Optional[float] = 5.0

    @property
    def max_pages(self) -> int:
        return self.pages_per_batch * self.max_batches


def is_dependent_candidate(client: MeevoClientRecord) -> bool:
    # self-registered customers carry their own phone number
    return not client.primary_phone


async def gather_bounded(aws: Iterable[Awaitable[T]], limit: int) -> List[T]:
    """asyncio.gather with at most `limit` awaitables in flight. Results keep submission order."""
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(aw: Awaitable[T]) -> T:
        async with semaphore:
            return await aw

    return list(await asyncio.gather(*(_run(aw) for aw in aws)))

# ============================================================
# RESULTS
# ============================================================

@dataclass
class ClientSearchResult:
    client: Optional[MeevoClientRecord] = None
    pages_scanned: int = 0
    failed_pages: List[int] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.client is not None


class LinkedProfile(BaseModel):
    client_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: str
    is_minor: bool = False


@dataclass
class LinkedSearchResult:
    profiles: List[LinkedProfile] = field(default_factory=list)
    pages_scanned: int = 0
    failed_pages: List[int] = field(default_factory=list)
    failed_details: List[str] = field(default_factory=list)
    ranges_searched: List[Tuple[int, int]] = field(default_factory=list)


class Appointment(BaseModel):
    appointment_id: Optional[str] = None
    appointment_service_id: Optional[str] = None
    start_time: str = Field(serialization_alias="datetime")
    end_time: Optional[str] = None
    service_id: Optional[str] = None
    stylist_id: Optional[str] = None
    concurrency_token: Optional[Any] = Field(None, serialization_alias="concurrency_check")
    status: str = "confirmed"
    client_id: str
    client_name: str
    starts_at: datetime = Field(exclude=True)

# ============================================================
# CLIENT SEARCH (phone / email)
# ============================================================

def _matches(client: MeevoClientRecord, phone: str, email: str) -> bool:
    if not client.client_id:
        return False
    if phone and normalize_phone(client.primary_phone) == phone:
        return True
    if email and (client.email or "").lower() == email:
        return True
    return False


async def find_client(
    meevo: MeevoClient,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    limits: SearchLimits = SearchLimits(),
) -> ClientSearchResult:
    """
    Scan the client listing in parallel batches of pages until a record matches.

    The listing has no server-side filter, so the scan is capped at
    limits.max_pages pages and stops early at the first all-empty batch.
    The first match in page order, then in-page order, wins.
    """
    wanted_phone = normalize_phone(phone) if phone else ""
    wanted_email = email.strip().lower() if email else ""
    result = ClientSearchResult()

    for batch in range(limits.max_batches):
        start_page = batch * limits.pages_per_batch + 1
        pages = range(start_page, start_page + limits.pages_per_batch)
        page_results: List[PageResult] = await gather_bounded(
            (meevo.list_clients(p, limits.items_per_page, timeout=limits.search_page_timeout) for p in pages),
            limits.page_concurrency,
        )
        result.pages_scanned += len(page_results)

        for pr in page_results:
            if pr.error:
                result.failed_pages.append(pr.page)
            for c in pr.clients:
                if _matches(c, wanted_phone, wanted_email):
                    result.client = c
                    return result

        if all(pr.is_empty for pr in page_results):
            logger.debug("Reached end of client listing at page %s", start_page + len(page_results) - 1)
            break

    return result

# ============================================================
# LINKED PROFILES (minors / dependents)
# ============================================================

def _range_batches(start: int, end: int, size: int) -> List[List[int]]:
    batches = []
    for batch_start in range(start, end, size):
        batches.append([p for p in range(batch_start, batch_start + size) if p <= end])
    return batches


async def find_linked_profiles(
    meevo: MeevoClient,
    guardian_id: str,
    limits: SearchLimits = SearchLimits(),
) -> LinkedSearchResult:
    """
    Find client records whose guardianId is `guardian_id`.

    Listing entries carry no guardian, so every phone-less entry costs a detail
    lookup. Ranges are searched in priority order and the search ends after the
    first range that produced a linked profile.
    """
    result = LinkedSearchResult()
    seen: Set[str] = set()

    for page_range in limits.linked_page_ranges:
        start, end = page_range
        result.ranges_searched.append(page_range)
        consecutive_empty = 0

        for pages in _range_batches(start, end, limits.linked_batch_size):
            page_results: List[PageResult] = await gather_bounded(
                (meevo.list_clients(p, limits.items_per_page, timeout=limits.linked_page_timeout) for p in pages),
                limits.page_concurrency,
            )
            result.pages_scanned += len(page_results)

            candidates: List[str] = []
            queued: Set[str] = set()
            for pr in page_results:
                if pr.error:
                    result.failed_pages.append(pr.page)
                if pr.is_empty:
                    consecutive_empty += 1
                    continue
                consecutive_empty = 0
                for c in pr.clients:
                    if not c.client_id or c.client_id in seen or c.client_id in queued:
                        continue
                    if is_dependent_candidate(c):
                        candidates.append(c.client_id)
                        queued.add(c.client_id)

            for i in range(0, len(candidates), limits.detail_batch_size):
                chunk = candidates[i:i + limits.detail_batch_size]
                details = await gather_bounded(
                    (meevo.get_client(cid, timeout=limits.detail_timeout) for cid in chunk),
                    limits.detail_concurrency,
                )
                for d in details:
                    if d.record is None:
                        result.failed_details.append(d.client_id)
                        continue
                    record = d.record
                    if not record.client_id or record.client_id in seen:
                        continue
                    seen.add(record.client_id)
                    if record.guardian_id == guardian_id:
                        result.profiles.append(LinkedProfile(
                            client_id=record.client_id,
                            first_name=record.first_name,
                            last_name=record.last_name,
                            name=record.full_name,
                            is_minor=record.is_minor,
                        ))
                        logger.info("Found linked profile: %s (%s)", record.full_name, record.client_id)

            if consecutive_empty >= limits.empty_page_limit:
                logger.debug("Range %s-%s exhausted at page %s", start, end, pages[-1])
                break

        if result.profiles:
            logger.info("Found linked profiles in range %s-%s, stopping search", start, end)
            break

    return result

# ============================================================
# APPOINTMENTS
# ============================================================

def parse_start(value: Any, tz: ZoneInfo) -> Optional[datetime]:
    """Parse an upstream timestamp; naive values are taken as location-local time."""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt


def _opt_str(v: Any) -> Optional[str]:
    return None if v is None else str(v)


def filter_upcoming(
    entries: Iterable[Dict[str, Any]],
    client_id: str,
    client_name: str,
    tz: ZoneInfo,
    now: Optional[datetime] = None,
) -> List[Appointment]:
    """
    Keep booked services that are not cancelled and start later than now or
    anywhere in the current (location-local) day.
    """
    now = (now or datetime.now(tz)).astimezone(tz)
    start_of_today = datetime.combine(now.date(), dtime.min, tzinfo=tz)

    out: List[Appointment] = []
    for apt in entries:
        starts_at = parse_start(apt.get("startTime"), tz)
        if starts_at is None:
            continue
        if not (starts_at > now or starts_at >= start_of_today):
            continue
        if apt.get("isCancelled"):
            continue
        out.append(Appointment(
            appointment_id=_opt_str(apt.get("appointmentId")),
            appointment_service_id=_opt_str(apt.get("appointmentServiceId")),
            start_time=apt["startTime"],
            end_time=_opt_str(apt.get("servicingEndTime")),
            service_id=_opt_str(apt.get("serviceId")),
            stylist_id=_opt_str(apt.get("employeeId")),
            concurrency_token=apt.get("concurrencyCheckDigits"),
            status="confirmed",
            client_id=client_id,
            client_name=client_name,
            starts_at=starts_at,
        ))
    return out


async def get_client_appointments(
    meevo: MeevoClient,
    client_id: str,
    client_name: str,
    tz: ZoneInfo,
    limits: SearchLimits = SearchLimits(),
    now: Optional[datetime] = None,
) -> List[Appointment]:
    """Upcoming appointments for one client. A failed fetch yields an empty list."""
    try:
        entries = await meevo.get_booked_services(client_id, timeout=limits.appointment_timeout)
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Error getting appointments for %s (%s): %s", client_name, client_id, e)
        return []
    return filter_upcoming(entries, client_id, client_name, tz, now=now)

# ============================================================
# AGGREGATION
# ============================================================

def merge_appointments(caller: List[Appointment], linked: Iterable[List[Appointment]]) -> List[Appointment]:
    combined = list(caller)
    for apts in linked:
        combined.extend(apts)
    # sorted() is stable, so caller appointments stay ahead of linked ones on ties
    return sorted(combined, key=lambda a: a.starts_at)


def not_found_response() -> Dict[str, Any]:
    return {
        "success": True,
        "found": False,
        "appointments": [],
        "message": NOT_FOUND_MESSAGE,
    }


def build_found_response(
    client: MeevoClientRecord,
    appointments: List[Appointment],
    linked_profiles: List[LinkedProfile],
    linked_count: int,
) -> Dict[str, Any]:
    message = f"Found {len(appointments)} upcoming appointment(s)"
    if linked_profiles:
        message += f" (including {linked_count} for linked profiles)"
    return {
        "success": True,
        "found": True,
        "client_name": client.full_name,
        "client_id": client.client_id,
        "appointments": [a.model_dump(by_alias=True) for a in appointments],
        "total": len(appointments),
        "linked_profiles": [
            {"client_id": p.client_id, "name": p.name, "is_minor": p.is_minor}
            for p in linked_profiles
        ],
        "message": message,
    }


def _log_coverage(label: str, pages_scanned: int, failed_pages: List[int], failed_details: Optional[List[str]] = None) -> None:
    failed_details = failed_details or []
    if failed_pages or failed_details:
        logger.warning(
            "%s coverage degraded: %s pages scanned, %s pages failed %s, %s detail lookups failed",
            label, pages_scanned, len(failed_pages), failed_pages[:20], len(failed_details),
        )
    else:
        logger.info("%s scanned %s pages", label, pages_scanned)


async def lookup_appointments(
    meevo: MeevoClient,
    phone: Optional[str],
    email: Optional[str],
    tz: ZoneInfo,
    limits: SearchLimits = SearchLimits(),
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Find the caller, their linked profiles and everyone's upcoming appointments."""
    search = await find_client(meevo, phone=phone, email=email, limits=limits)
    _log_coverage("Client search", search.pages_scanned, search.failed_pages)
    if not search.found:
        logger.info("No client found")
        return not_found_response()

    client = search.client
    caller_name = client.full_name
    logger.info("Client found: %s %s", caller_name, client.client_id)

    caller_appointments = await get_client_appointments(meevo, client.client_id, caller_name, tz, limits, now=now)

    linked = await find_linked_profiles(meevo, client.client_id, limits)
    _log_coverage("Linked profile search", linked.pages_scanned, linked.failed_pages, linked.failed_details)

    per_profile = await asyncio.gather(*(
        get_client_appointments(meevo, p.client_id, p.name, tz, limits, now=now)
        for p in linked.profiles
    ))
    linked_count = sum(len(apts) for apts in per_profile)

    appointments = merge_appointments(caller_appointments, per_profile)
    logger.info(
        "Total appointments: %s (caller) + %s (linked) = %s",
        len(caller_appointments), linked_count, len(appointments),
    )
    return build_found_response(client, appointments, linked.profiles, linked_count)
