import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

from red_commons.logging import getLogger

from .ledger import InviteLedger, InviteRecord, LedgerNotReady
from .reconciler import (
    AttributionResult,
    InviteFetchError,
    InviteSource,
    Unknown,
    reconcile,
)

log = getLogger("red.BeeHive.invitelog.router")


@dataclass(frozen=True)
class InviteCreate:
    code: str
    inviter_id: Optional[int] = None


@dataclass(frozen=True)
class InviteDelete:
    code: str


@dataclass(frozen=True)
class MemberAdd:
    guild_id: int
    user_id: int


@dataclass(frozen=True)
class LedgerResync:
    guild_id: int


class Notifier(Protocol):
    async def notify(self, event: MemberAdd, result: AttributionResult) -> None:
        ...


class EventRouter:
    """
    Feeds gateway events into one ledger, strictly one at a time.

    Listeners only call ``submit``. A single worker task pulls events off
    an unbounded queue and awaits each handler to completion before
    taking the next one, so the ledger never needs a lock. Running more
    than one worker would need a per-guild lock around the ledger.
    """

    def __init__(self, ledger: InviteLedger, source: InviteSource, notifier: Notifier):
        self.ledger = ledger
        self.source = source
        self.notifier = notifier
        self._queue: "Optional[asyncio.Queue[object]]" = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        self.ledger.ensure_ready()
        if self.running:
            return
        # Built here so the queue belongs to the loop that runs the worker.
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._worker = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    def submit(self, event: object) -> None:
        if self._queue is None:
            raise RuntimeError("router was not started")
        self._queue.put_nowait(event)

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            except LedgerNotReady:
                raise
            except Exception:
                log.exception("Unhandled error while processing %r", event)
            finally:
                self._queue.task_done()

    async def dispatch(self, event: object) -> None:
        if isinstance(event, InviteCreate):
            self.ledger.on_create(InviteRecord(event.code, 0, event.inviter_id))
        elif isinstance(event, InviteDelete):
            self.ledger.on_delete(event.code)
        elif isinstance(event, MemberAdd):
            await self._on_member_add(event)
        elif isinstance(event, LedgerResync):
            await self._on_resync(event)
        else:
            log.debug("Ignoring event %r", event)

    async def _on_member_add(self, event: MemberAdd):
        try:
            result = await reconcile(self.ledger, self.source, event.guild_id)
        except InviteFetchError as e:
            log.error("Could not attribute join of %s in %s: %s", event.user_id, event.guild_id, e)
            return

        if isinstance(result, Unknown):
            return
        log.info("Member %s joined %s via %r", event.user_id, event.guild_id, result)
        try:
            await self.notifier.notify(event, result)
        except Exception:
            log.exception("Failed to send join notification for %s", event.user_id)

    async def _on_resync(self, event: LedgerResync):
        try:
            snapshot = await self.source.fetch_invites(event.guild_id)
        except InviteFetchError as e:
            log.error("Ledger resync for %s failed: %s", event.guild_id, e)
            return
        self.ledger.initialize(snapshot)
        log.info("Ledger resynced for %s with %s invites", event.guild_id, len(self.ledger))
