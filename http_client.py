import logging
from typing import Iterable, List, Optional, Set

import requests

from ban_models import BAN_KIND_IP, STATUS_ACTIVE, BanRecord, ServerTarget
from config import get_setting

log = logging.getLogger(__name__)


class BanStoreError(Exception):
    """Raised when the ban backend cannot be reached or returns an error."""


class StoreWriteFailure(BanStoreError):
    """Raised when a ban record could not be inserted."""


def _extract_list(payload, *keys) -> list:
    if isinstance(payload, dict):
        for key in ("result", "data") + keys:
            if key in payload:
                return _extract_list(payload[key], *keys)
        return []
    if isinstance(payload, list):
        return payload
    return []


class BanApiClient:
    """Ban store and server registry backed by the admin HTTP API."""

    def __init__(self):
        self.base_url = get_setting("BAN_API_BASE_URL", "BAN_API_BASE_URL")
        if not self.base_url:
            raise BanStoreError("BAN_API_BASE_URL is required for the ban backend")

        # Prefer username/password login if provided.
        # Fall back to bearer token if login credentials are not supplied.
        self.username = get_setting("BAN_API_USERNAME", "BAN_API_USERNAME")
        self.password = get_setting("BAN_API_PASSWORD", "BAN_API_PASSWORD")
        token = get_setting("BAN_API_BEARER_TOKEN", "BAN_API_BEARER_TOKEN")

        self.timeout = float(get_setting("BAN_API_TIMEOUT", "BAN_API_TIMEOUT", "10"))
        verify_raw = str(get_setting("BAN_API_VERIFY", "BAN_API_VERIFY", "true")).lower()
        self.verify = verify_raw not in ("false", "0", "no", "off")
        self.api_root = get_setting("BAN_API_ROOT", "BAN_API_ROOT", "/api").strip("/")

        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

        if self.username and self.password:
            log.info(
                "Initialized ban API client (login mode) for %s/%s",
                self.base_url.rstrip("/"),
                self.api_root or "",
            )
            self._login()
        else:
            if not token:
                raise BanStoreError("BAN_API_BEARER_TOKEN or BAN_API_USERNAME/BAN_API_PASSWORD is required")
            self.session.headers.update({"Authorization": f"Bearer {token}"})
            log.info("Initialized ban API client (token mode) for %s/%s", self.base_url.rstrip("/"), self.api_root or "")

    def _build_url(self, endpoint: str) -> str:
        base = self.base_url.rstrip("/")
        parts = [base]
        if self.api_root:
            parts.append(self.api_root.strip("/"))
        parts.append(endpoint.lstrip("/"))
        return "/".join(parts)

    def _login(self) -> None:
        url = self._build_url("auth/login")
        try:
            resp = self.session.post(
                url,
                json={"username": self.username, "password": self.password},
                timeout=self.timeout,
                verify=self.verify,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise BanStoreError(f"login failed: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}
        token = data.get("token") if isinstance(data, dict) else None
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})
        log.info("Ban API login successful as %s", self.username)

    def _request(self, endpoint: str, method: str = "GET", json_payload=None, params=None):
        url = self._build_url(endpoint)
        try:
            response = self.session.request(
                method,
                url,
                json=json_payload,
                params=params,
                timeout=self.timeout,
                verify=self.verify,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            resp = getattr(exc, "response", None)
            body = resp.text if resp is not None else ""
            status = resp.status_code if resp is not None else "request"
            log.debug("Ban API %s failure: %s", endpoint, exc, exc_info=True)
            raise BanStoreError(f"{method} {endpoint} failed ({status}): {body or str(exc)}") from exc

        try:
            return response.json()
        except ValueError:
            return {"result": response.text}

    def _list_bans(self, **params) -> List[BanRecord]:
        data = self._request("bans", params=params)
        records = []
        for entry in _extract_list(data, "bans"):
            if not isinstance(entry, dict):
                continue
            records.append(BanRecord.from_api(entry))
        return records

    def list_active_ip_bans(self) -> List[BanRecord]:
        # The backend may ignore the filters, so they are applied again here.
        bans = self._list_bans(status=STATUS_ACTIVE, ban_type=BAN_KIND_IP)
        return [b for b in bans if b.is_active and b.ban_kind == BAN_KIND_IP and b.ip]

    def list_active_identities_with_bans(self) -> Set[str]:
        bans = self._list_bans(status=STATUS_ACTIVE)
        return {b.identity for b in bans if b.is_active and b.identity}

    def insert_ban(self, record: BanRecord) -> Optional[int]:
        payload = record.to_api()
        payload.pop("id", None)
        try:
            data = self._request("bans", method="POST", json_payload=payload)
        except BanStoreError as exc:
            raise StoreWriteFailure(f"ban insert for {record.identity or record.ip} failed: {exc}") from exc
        if isinstance(data, dict):
            raw_id = data.get("id")
            if raw_id is None and isinstance(data.get("result"), dict):
                raw_id = data["result"].get("id")
            try:
                return int(raw_id) if raw_id is not None else None
            except (TypeError, ValueError):
                return None
        return None

    def list_servers(self) -> List[ServerTarget]:
        data = self._request("servers")
        servers = []
        for entry in _flatten_server_groups(_extract_list(data, "groups", "servers")):
            try:
                servers.append(ServerTarget.from_api(entry))
            except (KeyError, TypeError, ValueError):
                log.warning("Skipping server entry without usable id/port: %r", entry)
        return servers


def _flatten_server_groups(entries: Iterable) -> List[dict]:
    flat = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        nested = entry.get("servers")
        if isinstance(nested, list):
            flat.extend(e for e in nested if isinstance(e, dict))
        else:
            flat.append(entry)
    return flat


_client: Optional[BanApiClient] = None


def _get_client() -> BanApiClient:
    global _client
    if _client is None:
        _client = BanApiClient()
    return _client


def list_active_ip_bans() -> List[BanRecord]:
    return _get_client().list_active_ip_bans()


def list_active_identities_with_bans() -> Set[str]:
    return _get_client().list_active_identities_with_bans()


def insert_ban(record: BanRecord) -> Optional[int]:
    return _get_client().insert_ban(record)


def list_servers() -> List[ServerTarget]:
    return _get_client().list_servers()
