import httpx
import pytest

from dues_service.core.errors import UpstreamUnavailableError
from dues_service.services import identity
from dues_service.services.identity import IdentityServiceClient, RosterPage, ServiceCredentials, fetch_billable_roster


def _user(index, role="USER_CASUAL"):
    return {
        "id": index,
        "firstName": "Resident",
        "lastName": f"{index:03d}",
        "email": f"resident{index:03d}@example.com",
        "role": role,
    }


def _paged_handler(users, page_size, seen_requests):
    pages = max(1, -(-len(users) // page_size))

    def _handler(request: httpx.Request) -> httpx.Response:
        seen_requests.append(request)
        page = int(request.url.params["page"])
        start = (page - 1) * page_size
        return httpx.Response(
            200,
            json={"data": {"users": users[start : start + page_size], "pagination": {"pages": pages}}},
        )

    return _handler


def test_client_pages_and_forwards_headers():
    seen = []
    users = [_user(index) for index in range(1, 8)] + [_user(50, role="SUPER_USER")]
    client = IdentityServiceClient(
        base_url="http://identity.test/api",
        transport=httpx.MockTransport(_paged_handler(users, 3, seen)),
    )
    credentials = ServiceCredentials(bearer_token="abc", request_id="req-42")

    roster = fetch_billable_roster(client, credentials, role="USER_CASUAL", page_size=3)

    assert [resident.id for resident in roster] == [str(index) for index in range(1, 8)]
    assert len(seen) == 3
    first = seen[0]
    assert first.url.path == "/api/users/list"
    assert first.url.params["limit"] == "3"
    assert first.url.params["role"] == "USER_CASUAL"
    assert first.headers["Authorization"] == "Bearer abc"
    assert first.headers["X-Request-ID"] == "req-42"
    assert roster[0].full_name == "Resident 001"


def test_client_maps_http_errors_to_upstream_unavailable():
    client = IdentityServiceClient(
        base_url="http://identity.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway")),
    )

    with pytest.raises(UpstreamUnavailableError) as excinfo:
        client.list_residents(1, 10, "USER_CASUAL", ServiceCredentials())
    assert excinfo.value.upstream == "identity"


def test_client_maps_connection_errors():
    def _refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = IdentityServiceClient(base_url="http://identity.test", transport=httpx.MockTransport(_refuse))

    with pytest.raises(UpstreamUnavailableError):
        client.list_residents(1, 10, None, ServiceCredentials())


def test_client_rejects_malformed_payload():
    client = IdentityServiceClient(
        base_url="http://identity.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>oops</html>")),
    )

    with pytest.raises(UpstreamUnavailableError):
        client.list_residents(1, 10, None, ServiceCredentials())


def test_client_rejects_residents_without_pagination():
    client = IdentityServiceClient(
        base_url="http://identity.test",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"data": {"users": [_user(1), _user(2)]}})
        ),
    )

    with pytest.raises(UpstreamUnavailableError):
        fetch_billable_roster(client, ServiceCredentials(), role="USER_CASUAL", page_size=2)


def test_client_accepts_empty_roster_without_pagination():
    client = IdentityServiceClient(
        base_url="http://identity.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"data": {"users": []}})),
    )

    assert fetch_billable_roster(client, ServiceCredentials(), role="USER_CASUAL") == []


def test_roster_deduplicates_and_filters_roles():
    class _Directory:
        def list_residents(self, page, page_size, role_filter, credentials):
            items = [
                identity.Resident(id="1", first_name="A", last_name="B", email="a@example.com", role="USER_CASUAL"),
                identity.Resident(id="2", first_name="C", last_name="D", email="c@example.com", role="USER_ADMIN"),
            ]
            return RosterPage(items=items, total_pages=2)

    roster = fetch_billable_roster(_Directory(), ServiceCredentials(), role="USER_CASUAL", page_size=2)

    assert [resident.id for resident in roster] == ["1"]


def test_roster_fails_when_pagination_never_ends(monkeypatch):
    monkeypatch.setattr(identity, "MAX_ROSTER_PAGES", 3)

    class _Endless:
        def list_residents(self, page, page_size, role_filter, credentials):
            resident = identity.Resident(
                id=str(page), first_name="R", last_name=str(page), email=f"r{page}@example.com", role="USER_CASUAL"
            )
            return RosterPage(items=[resident], total_pages=page + 1)

    with pytest.raises(UpstreamUnavailableError):
        fetch_billable_roster(_Endless(), ServiceCredentials(), role="USER_CASUAL", page_size=1)
