from dataclasses import dataclass, replace
from typing import Dict, Iterable, Iterator, Optional

from red_commons.logging import getLogger

log = getLogger("red.BeeHive.invitelog.ledger")


class LedgerNotReady(RuntimeError):
    """Raised when the ledger is used before its first snapshot was loaded."""


@dataclass(frozen=True)
class InviteRecord:
    code: str
    uses: Optional[int] = 0
    inviter_id: Optional[int] = None


def normalized(record: InviteRecord) -> InviteRecord:
    """Discord reports no use count for some invites; treat those as unused."""
    if record.uses is None:
        return replace(record, uses=0)
    return record


class InviteLedger:
    """
    Last known use count of every invite in one server.

    This is a best-effort cache of the most recent snapshot, patched by
    invite create/delete events in between. It is never persisted.
    """

    def __init__(self):
        self._invites: Dict[str, InviteRecord] = {}
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self, snapshot: Iterable[InviteRecord]) -> None:
        self._invites = {}
        for record in snapshot:
            record = normalized(record)
            self._invites[record.code] = record
        self._initialized = True
        log.debug("Ledger loaded with %s invites", len(self._invites))

    def ensure_ready(self) -> None:
        if not self._initialized:
            raise LedgerNotReady("invite ledger used before initialize()")

    def on_create(self, record: InviteRecord) -> None:
        # A freshly created invite has not been used yet.
        self._invites[record.code] = replace(record, uses=0)
        log.debug("Tracking new invite %s", record.code)

    def on_delete(self, code: str) -> None:
        if self._invites.pop(code, None) is not None:
            log.debug("Dropped invite %s", code)

    def get(self, code: str) -> Optional[InviteRecord]:
        return self._invites.get(code)

    def put(self, record: InviteRecord) -> None:
        self._invites[record.code] = record

    def clear(self) -> None:
        self._invites = {}
        self._initialized = False

    def __contains__(self, code) -> bool:
        return code in self._invites

    def __len__(self) -> int:
        return len(self._invites)

    def __iter__(self) -> Iterator[InviteRecord]:
        return iter(sorted(self._invites.values(), key=lambda r: r.code))
