import argparse
import logging
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Callable, Mapping, Optional, Set

import http_client
from ban_models import BAN_KIND_ACCOUNT, STATUS_ACTIVE, BanRecord, ServerTarget
from config import get_float_setting
from http_client import BanStoreError
from rcon_client import RconError, send_server_command
from rcon_packet import PacketError
from status_parser import BOT_IDENTITY, PlayerRecord, parse_status

log = logging.getLogger(__name__)

DEFAULT_INTERVAL = 60.0
DEFAULT_MAX_BACKOFF = 600.0

SYSTEM_ADMIN = "System (BG Monitor)"
EVASION_REASON = "Detected online with banned IP"
KICK_REASON = "Banned IP Detected"

CommandRunner = Callable[[ServerTarget, str], str]


class PerServerFailure(Exception):
    """One server could not be queried during a tick."""

    def __init__(self, server: ServerTarget, cause: Exception):
        super().__init__(f"{server.label}: {cause}")
        self.server = server
        self.cause = cause


class Action(Enum):
    NONE = "none"
    KICK = "kick"
    CATCH = "catch"


@dataclass
class BanSnapshot:
    """Ban state for one tick. Only ``banned_identities`` grows during the tick."""

    ip_bans: Mapping[str, BanRecord]
    banned_identities: Set[str]


@dataclass
class TickReport:
    skipped: bool = False
    servers_queried: int = 0
    servers_failed: int = 0
    players_seen: int = 0
    # Every kickid sent, including the one that follows each catch.
    kicks: int = 0
    catches: int = 0
    failed_inserts: int = 0
    failed_commands: int = 0
    caught_identities: list = field(default_factory=list)


def quote_reason(reason: str) -> str:
    return '"' + (reason or "").replace('"', "'") + '"'


def kick_command(slot_id: str, reason: str) -> str:
    return f"kickid {slot_id} {quote_reason(reason)}"


def ban_command(slot_id: str, duration: str, reason: str) -> str:
    return f"sm_ban #{slot_id} {duration} {quote_reason(reason)}"


def load_snapshot(store, now: Optional[datetime] = None) -> Optional[BanSnapshot]:
    now = now or datetime.now(timezone.utc)
    ip_bans = {}
    for ban in store.list_active_ip_bans():
        if not ban.ip or ban.is_expired(now):
            continue
        # Several bans can share an IP; the first one is representative.
        ip_bans.setdefault(ban.ip, ban)
    if not ip_bans:
        return None
    identities = set(store.list_active_identities_with_bans())
    return BanSnapshot(ip_bans=MappingProxyType(ip_bans), banned_identities=identities)


def _log_report(report: TickReport) -> None:
    if report.skipped:
        return
    log.info(
        "Tick done: %d servers queried, %d failed, %d players, %d kicks, %d catches",
        report.servers_queried,
        report.servers_failed,
        report.players_seen,
        report.kicks,
        report.catches,
    )


class BanEnforcer:
    def __init__(
        self,
        store=http_client,
        registry=http_client,
        run_command: CommandRunner = send_server_command,
        interval: Optional[float] = None,
        max_backoff: Optional[float] = None,
    ):
        self.store = store
        self.registry = registry
        self.run_command = run_command
        self.interval = interval if interval is not None else get_float_setting("ENFORCE_INTERVAL_SECONDS", DEFAULT_INTERVAL)
        self.max_backoff = max_backoff if max_backoff is not None else get_float_setting("ENFORCE_MAX_BACKOFF_SECONDS", DEFAULT_MAX_BACKOFF)
        self._failures = 0

    def run_tick(self, stop_event: Optional[threading.Event] = None) -> TickReport:
        report = TickReport()
        snapshot = load_snapshot(self.store)
        if snapshot is None:
            log.debug("No active IP bans; skipping enforcement tick")
            report.skipped = True
            return report

        servers = self.registry.list_servers()
        log.debug("Enforcing %d IP bans across %d servers", len(snapshot.ip_bans), len(servers))
        for server in servers:
            if stop_event is not None and stop_event.is_set():
                log.info("Stop requested; abandoning remaining servers for this tick")
                break
            try:
                self.enforce_server(snapshot, server, report)
            except PerServerFailure as exc:
                report.servers_failed += 1
                log.warning("Skipping server %s this tick: %s", exc.server.label, exc.cause)
        return report

    def enforce_server(self, snapshot: BanSnapshot, server: ServerTarget, report: Optional[TickReport] = None) -> None:
        report = report if report is not None else TickReport()
        try:
            output = self.run_command(server, "status")
        except (RconError, PacketError, OSError) as exc:
            raise PerServerFailure(server, exc) from exc
        report.servers_queried += 1

        for player in parse_status(output):
            report.players_seen += 1
            self.evaluate_player(snapshot, server, player, report)

    def evaluate_player(
        self,
        snapshot: BanSnapshot,
        server: ServerTarget,
        player: PlayerRecord,
        report: Optional[TickReport] = None,
    ) -> Action:
        report = report if report is not None else TickReport()
        if player.identity == BOT_IDENTITY or not player.ip:
            return Action.NONE

        ban = snapshot.ip_bans.get(player.ip)
        if ban is None:
            return Action.NONE

        if player.identity in snapshot.banned_identities:
            log.info("Kicking %s (%s) from %s: already banned, connected from banned IP %s",
                     player.display_name, player.identity, server.label, player.ip)
            self._send(server, kick_command(player.slot_id, KICK_REASON), report)
            report.kicks += 1
            return Action.KICK

        log.info("Caught %s (%s) on %s bypassing IP ban #%s on %s",
                 player.display_name, player.identity, server.label, ban.id, player.ip)
        record = BanRecord(
            display_name=player.display_name,
            identity=player.identity,
            ip=player.ip,
            ban_kind=BAN_KIND_ACCOUNT,
            reason=EVASION_REASON,
            duration_token=ban.duration_token,
            status=STATUS_ACTIVE,
            expires_at=ban.expires_at,
            originating_server_id=server.id,
            admin_name=SYSTEM_ADMIN,
        )
        try:
            self.store.insert_ban(record)
        except BanStoreError as exc:
            report.failed_inserts += 1
            log.error("Failed to record evasion ban for %s: %s", player.identity, exc)
        else:
            snapshot.banned_identities.add(player.identity)

        self._send(server, ban_command(player.slot_id, ban.duration_token, EVASION_REASON), report)
        self._send(server, kick_command(player.slot_id, KICK_REASON), report)
        report.kicks += 1
        report.catches += 1
        report.caught_identities.append(player.identity)
        return Action.CATCH

    def _send(self, server: ServerTarget, command: str, report: TickReport) -> None:
        try:
            self.run_command(server, command)
        except (RconError, PacketError, OSError) as exc:
            report.failed_commands += 1
            log.warning("Command %r on %s failed: %s", command.split(" ", 1)[0], server.label, exc)

    def next_delay(self) -> float:
        if not self._failures:
            return self.interval
        return min(self.interval * (2 ** (self._failures - 1)), max(self.max_backoff, self.interval))

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        stop_event = stop_event or threading.Event()
        log.info("Ban enforcement started (interval %.0fs)", self.interval)
        while not stop_event.is_set():
            try:
                report = self.run_tick(stop_event)
            except Exception:
                self._failures += 1
                log.exception("Enforcement tick failed (%d in a row)", self._failures)
            else:
                self._failures = 0
                _log_report(report)
            delay = self.next_delay()
            log.debug("Next enforcement tick in %.0fs", delay)
            stop_event.wait(delay)
        log.info("Ban enforcement stopped")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Kick and ban players evading IP bans")
    parser.add_argument("--once", action="store_true", help="run a single tick and exit")
    args = parser.parse_args(argv)

    enforcer = BanEnforcer()
    if args.once:
        _log_report(enforcer.run_tick())
        return

    stop_event = threading.Event()

    def _stop(signum, frame):
        log.info("Received signal %d; stopping after the current server", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    enforcer.run_forever(stop_event)


if __name__ == "__main__":
    main()
