import logging
from dataclasses import dataclass
from typing import List, Optional

log = logging.getLogger(__name__)

BOT_IDENTITY = "BOT"


@dataclass(frozen=True)
class PlayerRecord:
    slot_id: str
    display_name: str
    identity: str
    ip: str

    @property
    def is_bot(self) -> bool:
        return self.identity == BOT_IDENTITY


def parse_status_line(line: str) -> Optional[PlayerRecord]:
    """Parse one ``status`` player line, or return None if it does not fit.

    Expected shape::

        # <userid> <slot> "<name>" <identity> <time> <ping> ... <ip>:<port>

    The name is everything between the first and the last double quote, so
    quotes inside a name do not break the columns around it.
    """
    line = line.strip()
    if not line.startswith("#"):
        return None

    first_quote = line.find('"')
    last_quote = line.rfind('"')
    if first_quote < 0 or first_quote >= last_quote:
        return None

    pre_name = line[:first_quote].strip()[1:].split()
    slot_id = pre_name[0] if pre_name else ""
    if not slot_id or slot_id == "#":
        return None

    display_name = line[first_quote + 1:last_quote]
    fields = line[last_quote + 1:].split()
    if len(fields) < 2:
        return None

    identity = fields[0]
    ip = fields[-1].split(":", 1)[0]
    if not ip:
        return None
    return PlayerRecord(slot_id=slot_id, display_name=display_name, identity=identity, ip=ip)


def parse_status(text: str, include_bots: bool = False) -> List[PlayerRecord]:
    players = []
    for raw in (text or "").splitlines():
        record = parse_status_line(raw)
        if record is None:
            if raw.strip().startswith("#"):
                log.debug("Skipping unparseable status line: %r", raw)
            continue
        if record.is_bot and not include_bots:
            continue
        players.append(record)
    return players


def find_player(text: str, slot_id) -> Optional[PlayerRecord]:
    wanted = str(slot_id)
    for record in parse_status(text, include_bots=True):
        if record.slot_id == wanted:
            return record
    return None
