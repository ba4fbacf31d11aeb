import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

log = logging.getLogger(__name__)

BAN_KIND_ACCOUNT = "account"
BAN_KIND_IP = "ip"

STATUS_ACTIVE = "active"


def parse_timestamp(raw) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the ban backend; naive values are UTC."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        value = raw
    else:
        text = str(raw).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            log.warning("Ignoring unparseable timestamp %r", raw)
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _optional_int(raw) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class BanRecord:
    display_name: str
    identity: str
    ip: str
    ban_kind: str
    duration_token: str
    reason: Optional[str] = None
    status: str = STATUS_ACTIVE
    expires_at: Optional[datetime] = None
    originating_server_id: Optional[int] = None
    admin_name: Optional[str] = None
    id: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now

    @classmethod
    def from_api(cls, data: dict) -> "BanRecord":
        return cls(
            id=_optional_int(data.get("id")),
            display_name=data.get("name") or "",
            identity=data.get("steam_id") or "",
            ip=data.get("ip") or "",
            ban_kind=data.get("ban_type") or BAN_KIND_ACCOUNT,
            reason=data.get("reason"),
            duration_token=str(data.get("duration") or "0"),
            status=data.get("status") or STATUS_ACTIVE,
            expires_at=parse_timestamp(data.get("expires_at")),
            originating_server_id=_optional_int(data.get("server_id")),
            admin_name=data.get("admin_name"),
        )

    def to_api(self) -> dict:
        payload = {
            "name": self.display_name,
            "steam_id": self.identity,
            "ip": self.ip,
            "ban_type": self.ban_kind,
            "reason": self.reason,
            "duration": self.duration_token,
            "status": self.status,
            "expires_at": format_timestamp(self.expires_at),
            "server_id": self.originating_server_id,
            "admin_name": self.admin_name,
        }
        if self.id is not None:
            payload["id"] = self.id
        return payload


@dataclass(frozen=True)
class ServerTarget:
    id: int
    address: str
    port: int
    rcon_secret: str = ""
    name: str = ""

    @property
    def endpoint(self) -> str:
        return f"{self.address}:{self.port}"

    @property
    def label(self) -> str:
        if self.name:
            return f"{self.name} ({self.endpoint})"
        return self.endpoint

    @classmethod
    def from_api(cls, data: dict) -> "ServerTarget":
        return cls(
            id=int(data["id"]),
            address=data.get("ip") or data.get("address") or "",
            port=int(data.get("port") or 0),
            rcon_secret=data.get("rcon_password") or "",
            name=data.get("name") or "",
        )
