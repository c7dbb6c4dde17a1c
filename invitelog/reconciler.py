from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Union

from red_commons.logging import getLogger

from .ledger import InviteLedger, InviteRecord, normalized

log = getLogger("red.BeeHive.invitelog.reconciler")


class InviteFetchError(Exception):
    """The current invite list could not be fetched from Discord."""


@dataclass(frozen=True)
class UsedInvite:
    code: str
    uses: int
    inviter_id: Optional[int] = None


@dataclass(frozen=True)
class VanityFallback:
    code: str


@dataclass(frozen=True)
class Unknown:
    pass


AttributionResult = Union[UsedInvite, VanityFallback, Unknown]


class InviteSource(Protocol):
    async def fetch_invites(self, guild_id: int) -> List[InviteRecord]:
        ...

    def vanity_url_code(self, guild_id: int) -> Optional[str]:
        ...


def diff_snapshot(ledger: InviteLedger, snapshot: Iterable[InviteRecord]) -> Optional[InviteRecord]:
    """
    Find the invite that explains a join and refresh the ledger.

    An invite is a candidate when it is not tracked yet or its use count
    went up since the ledger last saw it. Every record of the snapshot is
    written back to the ledger, whether it is a candidate or not.

    When two invites were used between two joins there is no way to tell
    which one belongs to this member. The last candidate in snapshot
    order wins.
    """
    ledger.ensure_ready()
    used = None
    for record in snapshot:
        record = normalized(record)
        old = ledger.get(record.code)
        if old is None or old.uses < record.uses:
            used = record
        ledger.put(record)
    return used


async def reconcile(ledger: InviteLedger, source: InviteSource, guild_id: int) -> AttributionResult:
    ledger.ensure_ready()
    # InviteFetchError propagates here, before the ledger is touched.
    snapshot = await source.fetch_invites(guild_id)

    used = diff_snapshot(ledger, snapshot)
    if used is not None:
        return UsedInvite(code=used.code, uses=used.uses, inviter_id=used.inviter_id)

    vanity = source.vanity_url_code(guild_id)
    if vanity:
        return VanityFallback(code=vanity)
    log.debug("No invite explains the latest join in %s", guild_id)
    return Unknown()
