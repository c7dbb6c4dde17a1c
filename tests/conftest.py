"""Shared fakes for the invite logging tests."""
import pytest

from invitelog.ledger import InviteLedger, InviteRecord
from invitelog.reconciler import InviteFetchError


class FakeSource:
    """Hands out queued snapshots. An exception in the queue is raised instead."""

    def __init__(self):
        self.snapshots = []
        self.vanity = None
        self.calls = []
        self.gate = None

    def push(self, *records):
        self.snapshots.append(list(records))

    def fail(self, message="boom"):
        self.snapshots.append(InviteFetchError(message))

    async def fetch_invites(self, guild_id):
        self.calls.append(guild_id)
        if self.gate is not None:
            await self.gate.wait()
        snapshot = self.snapshots.pop(0)
        if isinstance(snapshot, Exception):
            raise snapshot
        return snapshot

    def vanity_url_code(self, guild_id):
        return self.vanity


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.error = None

    async def notify(self, event, result):
        if self.error is not None:
            raise self.error
        self.sent.append((event, result))


@pytest.fixture
def ledger():
    ledger = InviteLedger()
    ledger.initialize([])
    return ledger


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def record():
    def make(code, uses=0, inviter_id=None):
        return InviteRecord(code, uses, inviter_id)
    return make
