"""On-demand server operations for the admin panel.

These reuse the same one-connection-per-command RCON path as the
enforcement loop, outside its schedule.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import http_client
from ban_enforcer import ban_command, kick_command
from ban_models import BAN_KIND_IP, STATUS_ACTIVE, BanRecord, ServerTarget
from http_client import BanStoreError
from rcon_client import RconError, check_rcon, send_server_command
from rcon_packet import PacketError
from status_parser import PlayerRecord, find_player, parse_status

log = logging.getLogger(__name__)

DEFAULT_KICK_REASON = "Kicked by admin"
DEFAULT_BAN_REASON = "Banned by admin"
UNKNOWN_NAME = "Unknown"
UNKNOWN_IP = "0.0.0.0"


def check_server(server: ServerTarget) -> Tuple[bool, str]:
    try:
        check_rcon((server.address, server.port), server.rcon_secret)
    except RconError as exc:
        return False, f"Connection failed: {exc}"
    return True, "Connected successfully"


def list_players(server: ServerTarget, run_command=send_server_command) -> List[PlayerRecord]:
    output = run_command(server, "status")
    log.debug("RCON 'status' output from %s:\n%s", server.label, output)
    return parse_status(output, include_bots=True)


def kick_player(server: ServerTarget, slot_id, reason: Optional[str] = None, run_command=send_server_command) -> str:
    reason = reason or DEFAULT_KICK_REASON
    log.info("Kicking userid %s from %s: %s", slot_id, server.label, reason)
    return run_command(server, kick_command(str(slot_id), reason))


def ban_player(
    server: ServerTarget,
    slot_id,
    duration_minutes: int,
    reason: Optional[str] = None,
    admin_name: Optional[str] = None,
    store=http_client,
    run_command=send_server_command,
    now: Optional[datetime] = None,
) -> str:
    """Record an IP ban for a connected player and ban them in game.

    The player's name, identity and IP come from ``status``; if the lookup
    fails the ban is still recorded with placeholder values. A failed insert
    is logged and does not stop the in-game ban.
    """
    reason = reason or DEFAULT_BAN_REASON
    duration_minutes = max(int(duration_minutes), 0)
    now = now or datetime.now(timezone.utc)

    player = None
    try:
        player = find_player(run_command(server, "status"), slot_id)
    except (RconError, PacketError) as exc:
        log.warning("Could not look up userid %s on %s: %s", slot_id, server.label, exc)
    if player is None:
        log.warning("Userid %s not found in status on %s; recording placeholder ban", slot_id, server.label)

    record = BanRecord(
        display_name=player.display_name if player else UNKNOWN_NAME,
        identity=player.identity if player else UNKNOWN_NAME,
        ip=player.ip if player else UNKNOWN_IP,
        ban_kind=BAN_KIND_IP,
        reason=reason,
        duration_token=str(duration_minutes),
        status=STATUS_ACTIVE,
        expires_at=now + timedelta(minutes=duration_minutes) if duration_minutes > 0 else None,
        originating_server_id=server.id,
        admin_name=admin_name,
    )
    log.info("Recording ban for %s (%s) on %s", record.display_name, record.identity, record.ip)
    try:
        store.insert_ban(record)
    except BanStoreError as exc:
        log.error("Failed to insert ban into store: %s", exc)

    return run_command(server, ban_command(str(slot_id), str(duration_minutes), reason))
