"""In-memory ARM and Kudu-lite server for testing.

MockArmServer stands in for a requests.Session: code under test calls
`session.request(...)` and gets back real requests.Response objects built
from in-memory state. Requests are recorded for assertions, and failures can
be injected per path.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlencode, urlsplit

import requests

MANAGEMENT_HOST = "management.azure.com"
MANAGEMENT_URL = f"https://{MANAGEMENT_HOST}"

SUBSCRIPTION_A = "11111111-1111-1111-1111-111111111111"
SUBSCRIPTION_B = "22222222-2222-2222-2222-222222222222"

_FILTER_NAME_PATTERN = re.compile(r"name eq '([^']*)'")
_FILTER_TYPE_PATTERN = re.compile(r"resourceType eq '([^']*)'")


@dataclass
class MockSite:
    """A Function App known to the mock server."""

    name: str
    subscription_id: str
    resource_group: str = "rg-test"
    location: str = "westeurope"
    kind: str = "functionapp,linux"
    sku: str = "Dynamic"
    app_settings: dict[str, str] = field(default_factory=dict)
    connection_strings: dict[str, dict[str, str]] = field(default_factory=dict)
    web_config: dict[str, Any] = field(default_factory=dict)
    publishing_password: str = "publish-secret"
    functions: list[dict[str, Any]] = field(default_factory=list)
    function_keys: dict[str, str] = field(default_factory=dict)

    @property
    def resource_id(self) -> str:
        return (
            f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.Web/sites/{self.name}"
        )

    @property
    def host_name(self) -> str:
        return f"{self.name}.azurewebsites.net"

    @property
    def scm_host_name(self) -> str:
        return f"{self.name}.scm.azurewebsites.net"

    @property
    def publishing_user_name(self) -> str:
        return f"${self.name}"


@dataclass
class MockStorageAccount:
    name: str
    subscription_id: str
    resource_group: str = "rg-test"
    keys: list[str] = field(default_factory=lambda: ["storage-key-1", "storage-key-2"])

    @property
    def resource_id(self) -> str:
        return (
            f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.Storage/storageAccounts/{self.name}"
        )


@dataclass
class MockDeployment:
    """A Kudu-lite deployment.

    `list_statuses` are served one per `/deployments` call and
    `detail_statuses` one per `/deployments/{id}` call; the last value
    sticks. `log_snapshots` likewise yields the full log as of each
    `/deployments/{id}/log` call.
    """

    id: str
    list_statuses: list[Any] = field(default_factory=lambda: ["Success"])
    detail_statuses: list[Any] = field(default_factory=lambda: ["Success"])
    log_snapshots: list[list[dict[str, str]]] = field(default_factory=list)
    _list_calls: int = 0
    _detail_calls: int = 0
    _log_calls: int = 0

    def next_list_status(self) -> Any:
        value = self.list_statuses[min(self._list_calls, len(self.list_statuses) - 1)]
        self._list_calls += 1
        return value

    def next_detail_status(self) -> Any:
        value = self.detail_statuses[min(self._detail_calls, len(self.detail_statuses) - 1)]
        self._detail_calls += 1
        return value

    def next_logs(self) -> list[dict[str, str]]:
        if not self.log_snapshots:
            return []
        value = self.log_snapshots[min(self._log_calls, len(self.log_snapshots) - 1)]
        self._log_calls += 1
        return value


@dataclass
class RecordedRequest:
    method: str
    url: str
    host: str
    path: str
    headers: dict[str, str]
    payload: Any
    auth: Any


@dataclass
class _Failure:
    path_fragment: str
    method: str | None
    status: int | None
    body: Any
    exception: Exception | None
    remaining: int


def make_response(method: str, url: str, status: int, body: Any = None) -> requests.Response:
    """Build a real requests.Response carrying `body` as JSON (or raw text)."""
    response = requests.Response()
    response.status_code = status
    response.url = url
    response.encoding = "utf-8"
    try:
        response.reason = HTTPStatus(status).phrase
    except ValueError:
        response.reason = "Unknown"
    if body is None:
        response._content = b""
    elif isinstance(body, RawBody):
        response._content = body.text.encode("utf-8")
    else:
        response._content = json.dumps(body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    response.request = requests.Request(method, url).prepare()
    return response


@dataclass(frozen=True)
class RawBody:
    """Non-JSON response body."""

    text: str


class MockArmServer:
    """Fake requests.Session serving ARM and Kudu-lite endpoints."""

    def __init__(self) -> None:
        self.subscriptions: list[str] = []
        self.sites: list[MockSite] = []
        self.storage_accounts: list[MockStorageAccount] = []
        # Kudu deployments per site name, newest first
        self.deployments: dict[str, list[MockDeployment]] = {}
        # Number of empty pages served before a resource listing finds anything
        self.empty_pages: dict[str, int] = {}
        self.requests: list[RecordedRequest] = []
        self.closed = False
        self._failures: list[_Failure] = []
        self._token_counter = 0

    # -------------------------------------------------------------------------
    # State setup
    # -------------------------------------------------------------------------

    def add_subscription(self, subscription_id: str) -> None:
        self.subscriptions.append(subscription_id)

    def add_site(self, site: MockSite) -> MockSite:
        if site.subscription_id not in self.subscriptions:
            self.subscriptions.append(site.subscription_id)
        self.sites.append(site)
        return site

    def add_storage_account(self, account: MockStorageAccount) -> MockStorageAccount:
        if account.subscription_id not in self.subscriptions:
            self.subscriptions.append(account.subscription_id)
        self.storage_accounts.append(account)
        return account

    def add_deployment(self, site_name: str, deployment: MockDeployment) -> MockDeployment:
        """Register a deployment as the newest one for a site."""
        self.deployments.setdefault(site_name, []).insert(0, deployment)
        return deployment

    def fail(
        self,
        path_fragment: str,
        *,
        status: int | None = 503,
        times: int = 1,
        method: str | None = None,
        body: Any = None,
        exception: Exception | None = None,
    ) -> None:
        """Fail the next `times` requests whose path contains `path_fragment`.

        Either answers with `status`/`body` or raises `exception`.
        """
        self._failures.append(
            _Failure(path_fragment, method, status, body, exception, remaining=times)
        )

    # -------------------------------------------------------------------------
    # Assertions
    # -------------------------------------------------------------------------

    def count(self, method: str, path_fragment: str) -> int:
        return sum(
            1 for r in self.requests if r.method == method and path_fragment in r.path
        )

    def last(self, method: str, path_fragment: str) -> RecordedRequest:
        for recorded in reversed(self.requests):
            if recorded.method == method and path_fragment in recorded.path:
                return recorded
        raise AssertionError(f"No {method} request matching {path_fragment}")

    # -------------------------------------------------------------------------
    # requests.Session interface
    # -------------------------------------------------------------------------

    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        json: Any = None,
        timeout: Any = None,
        auth: Any = None,
        **kwargs: Any,
    ) -> requests.Response:
        parts = urlsplit(url)
        recorded = RecordedRequest(
            method=method,
            url=url,
            host=parts.netloc,
            path=parts.path,
            headers=dict(headers or {}),
            payload=json,
            auth=auth,
        )
        self.requests.append(recorded)

        for failure in self._failures:
            if failure.remaining <= 0:
                continue
            if failure.path_fragment not in parts.path:
                continue
            if failure.method and failure.method != method:
                continue
            failure.remaining -= 1
            if failure.exception is not None:
                raise failure.exception
            return make_response(method, url, failure.status or 500, failure.body)

        if parts.netloc == MANAGEMENT_HOST:
            status, body = self._handle_arm(method, parts.path, parse_qs(parts.query), json)
        else:
            status, body = self._handle_kudu(method, parts.netloc, parts.path)
        return make_response(method, url, status, body)

    def close(self) -> None:
        self.closed = True

    # -------------------------------------------------------------------------
    # ARM
    # -------------------------------------------------------------------------

    def _not_found(self, what: str) -> tuple[int, Any]:
        return 404, {"error": {"code": "ResourceNotFound", "message": f"{what} was not found."}}

    def _handle_arm(
        self, method: str, path: str, query: dict[str, list[str]], payload: Any
    ) -> tuple[int, Any]:
        if path == "/subscriptions" and method == "GET":
            value = [{"subscriptionId": s, "state": "Enabled"} for s in self.subscriptions]
            return 200, {"value": value}

        match = re.fullmatch(r"/subscriptions/([^/]+)/resources", path)
        if match and method == "GET":
            return self._list_resources(match.group(1), query)

        for site in self.sites:
            if path.lower().startswith(site.resource_id.lower()):
                return self._handle_site(method, site, path[len(site.resource_id):], payload)

        for account in self.storage_accounts:
            if path.lower() == f"{account.resource_id}/listKeys".lower() and method == "POST":
                return 200, {
                    "keys": [
                        {"keyName": f"key{i + 1}", "value": key, "permissions": "FULL"}
                        for i, key in enumerate(account.keys)
                    ]
                }

        return self._not_found(path)

    def _list_resources(self, subscription_id: str, query: dict[str, list[str]]) -> tuple[int, Any]:
        resource_filter = query.get("$filter", [""])[0]
        name_match = _FILTER_NAME_PATTERN.search(resource_filter)
        type_match = _FILTER_TYPE_PATTERN.search(resource_filter)
        name = name_match.group(1) if name_match else None
        resource_type = type_match.group(1) if type_match else None

        page = int(query.get("$skiptoken", ["0"])[0])
        if page < self.empty_pages.get(subscription_id, 0):
            next_query = urlencode({"$filter": resource_filter, "$skiptoken": page + 1})
            return 200, {
                "value": [],
                "nextLink": (
                    f"{MANAGEMENT_URL}/subscriptions/{subscription_id}/resources?{next_query}"
                ),
            }

        value: list[dict[str, Any]] = []
        if resource_type and resource_type.lower() == "microsoft.web/sites":
            value = [
                {"id": s.resource_id, "name": s.name, "type": "Microsoft.Web/sites"}
                for s in self.sites
                if s.subscription_id == subscription_id and s.name == name
            ]
        elif resource_type and resource_type.lower() == "microsoft.storage/storageaccounts":
            value = [
                {"id": a.resource_id, "name": a.name, "type": "Microsoft.Storage/storageAccounts"}
                for a in self.storage_accounts
                if a.subscription_id == subscription_id and a.name == name
            ]
        return 200, {"value": value}

    def _handle_site(
        self, method: str, site: MockSite, sub_path: str, payload: Any
    ) -> tuple[int, Any]:
        route = (method, sub_path)

        if route == ("GET", ""):
            return 200, {
                "id": site.resource_id,
                "name": site.name,
                "type": "Microsoft.Web/sites",
                "kind": site.kind,
                "location": site.location,
                "properties": {
                    "enabledHostNames": [site.host_name, site.scm_host_name],
                    "sku": site.sku,
                    "state": "Running",
                },
            }
        if route == ("POST", "/config/PublishingCredentials/list"):
            return 200, {
                "properties": {
                    "publishingUserName": site.publishing_user_name,
                    "publishingPassword": site.publishing_password,
                    "scmUri": f"https://{site.publishing_user_name}:x@{site.scm_host_name}",
                }
            }
        if route == ("GET", "/config/web"):
            return 200, {"properties": dict(site.web_config)}
        if route == ("PUT", "/config/web"):
            site.web_config.update(payload["properties"])
            return 200, {"properties": dict(site.web_config)}
        if route == ("POST", "/config/AppSettings/list"):
            return 200, {"properties": dict(site.app_settings)}
        if route == ("PUT", "/config/AppSettings"):
            site.app_settings = dict(payload["properties"])
            return 200, {"properties": dict(site.app_settings)}
        if route == ("POST", "/config/ConnectionStrings/list"):
            return 200, {"properties": dict(site.connection_strings)}
        if route == ("GET", "/hostruntime/admin/functions"):
            return 200, list(site.functions)
        if route == ("GET", "/hostruntime/admin/host/token"):
            self._token_counter += 1
            return 200, f"restricted-token-{self._token_counter}"
        if route == ("POST", "/hostruntime/admin/host/synctriggers"):
            return 200, None

        keys_match = re.fullmatch(r"/hostruntime/admin/functions/([^/]+)/keys", sub_path)
        if keys_match and method == "GET":
            key = site.function_keys.get(keys_match.group(1))
            if key is None:
                return self._not_found(keys_match.group(1))
            return 200, {"keys": [{"name": "default", "value": key}]}

        return self._not_found(sub_path)

    # -------------------------------------------------------------------------
    # Kudu-lite
    # -------------------------------------------------------------------------

    def _handle_kudu(self, method: str, host: str, path: str) -> tuple[int, Any]:
        site = next((s for s in self.sites if s.scm_host_name == host), None)
        if site is None or method != "GET":
            return 404, RawBody("Not Found")

        deployments = self.deployments.get(site.name, [])

        if path == "/deployments":
            return 200, [{"id": d.id, "status": d.next_list_status()} for d in deployments]

        match = re.fullmatch(r"/deployments/([^/]+)(/log)?", path)
        if match:
            deployment = next((d for d in deployments if d.id == match.group(1)), None)
            if deployment is None:
                return 404, RawBody("Not Found")
            if match.group(2):
                return 200, deployment.next_logs()
            return 200, {"id": deployment.id, "status": deployment.next_detail_status()}

        return 404, RawBody("Not Found")
