from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..config import settings
from ..core.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

MAX_ROSTER_PAGES = 1000


@dataclass(frozen=True)
class ServiceCredentials:
    """Credentials forwarded to upstream services on behalf of one request."""

    bearer_token: Optional[str] = None
    request_id: Optional[str] = None

    def headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.bearer_token:
            headers["Authorization"] = f"Bearer {self.bearer_token}"
        if self.request_id:
            headers["X-Request-ID"] = self.request_id
        return headers


@dataclass(frozen=True)
class Resident:
    id: str
    first_name: str
    last_name: str
    email: str
    role: str

    @property
    def full_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email


@dataclass(frozen=True)
class RosterPage:
    items: List[Resident]
    total_pages: int


class IdentityDirectory(Protocol):
    def list_residents(
        self,
        page: int,
        page_size: int,
        role_filter: Optional[str],
        credentials: ServiceCredentials,
    ) -> RosterPage: ...


def _parse_resident(raw: Dict[str, Any]) -> Resident:
    return Resident(
        id=str(raw["id"]),
        first_name=(raw.get("firstName") or "").strip(),
        last_name=(raw.get("lastName") or "").strip(),
        email=(raw.get("email") or "").strip(),
        role=raw.get("role") or "",
    )


class IdentityServiceClient:
    """HTTP client for the identity service's user directory."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._base_url = (base_url or settings.identity_service_url).rstrip("/")
        self._timeout = httpx.Timeout(timeout_seconds or settings.identity_timeout_seconds)
        self._transport = transport

    def _http_client(self, credentials: ServiceCredentials) -> httpx.Client:
        return httpx.Client(
            base_url=self._base_url,
            headers=credentials.headers(),
            timeout=self._timeout,
            transport=self._transport,
        )

    def list_residents(
        self,
        page: int,
        page_size: int,
        role_filter: Optional[str],
        credentials: ServiceCredentials,
    ) -> RosterPage:
        params: Dict[str, Any] = {"page": page, "limit": page_size}
        if role_filter:
            params["role"] = role_filter
        try:
            with self._http_client(credentials) as client:
                response = client.get("/users/list", params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Identity service error listing residents (page %s): %s %s",
                page,
                exc.response.status_code,
                exc.response.text,
            )
            raise UpstreamUnavailableError(
                f"Identity service responded with {exc.response.status_code}.",
                upstream="identity",
                context={"page": page},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Identity service unreachable listing residents (page %s): %s", page, exc)
            raise UpstreamUnavailableError(
                "Identity service is unreachable.",
                upstream="identity",
                context={"page": page},
            ) from exc

        try:
            body = response.json()
            data = body.get("data") or {}
            users = data.get("users") or []
            pages = (data.get("pagination") or {}).get("pages")
            total_pages = int(pages or 0)
            items = [_parse_resident(user) for user in users]
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise UpstreamUnavailableError(
                "Unexpected response from identity service.",
                upstream="identity",
                context={"page": page},
            ) from exc
        if items and pages is None:
            # Without a page count the rest of the roster cannot be reached.
            logger.error("Identity service returned residents without pagination (page %s)", page)
            raise UpstreamUnavailableError(
                "Identity service response is missing pagination.",
                upstream="identity",
                context={"page": page},
            )
        return RosterPage(items=items, total_pages=total_pages)


def fetch_billable_roster(
    directory: IdentityDirectory,
    credentials: ServiceCredentials,
    role: Optional[str] = None,
    page_size: Optional[int] = None,
) -> List[Resident]:
    """Page through the directory until exhausted; any page failure fails the whole roster."""
    role_filter = role or settings.billable_resident_role
    size = page_size or settings.identity_page_size
    residents: List[Resident] = []
    seen: set[str] = set()
    page = 1
    while page <= MAX_ROSTER_PAGES:
        result = directory.list_residents(page, size, role_filter, credentials)
        for resident in result.items:
            # Upstream filter is advisory; older directory builds ignore it.
            if resident.role != role_filter or resident.id in seen:
                continue
            seen.add(resident.id)
            residents.append(resident)
        if not result.items or page >= result.total_pages:
            break
        page += 1
    else:
        raise UpstreamUnavailableError(
            "Identity service pagination did not terminate.",
            upstream="identity",
            context={"pages": MAX_ROSTER_PAGES},
        )
    return residents
