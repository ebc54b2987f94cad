import asyncio

import pytest

from collegestar.client.errors import AuthenticationMissing, VerificationTimeout
from collegestar.client.poller import PaymentVerifier, VerificationStatus, is_truthy_flag
from collegestar.client.scheduler import AsyncioScheduler, VirtualScheduler
from collegestar.client.storage import MemoryKeyValueStore

def make_verifier(identity, flags=None, **kwargs):
    scheduler = VirtualScheduler()
    verifier = PaymentVerifier(identity, flags or MemoryKeyValueStore(), scheduler, **kwargs)
    return verifier, scheduler

def test_local_flag_verifies_synchronously(user, fake_identity):
    identity = fake_identity(user=user)
    flags = MemoryKeyValueStore({"donorVerified": "true"})
    verifier, scheduler = make_verifier(identity, flags)

    assert verifier.start() is VerificationStatus.VERIFIED
    assert verifier.status is VerificationStatus.VERIFIED
    assert identity.calls == []
    assert scheduler.active_count == 0

def test_missing_identity_is_an_error(fake_identity):
    identity = fake_identity(user=None)
    verifier, scheduler = make_verifier(identity)

    verifier.start()

    assert verifier.status is VerificationStatus.ERROR
    assert verifier.error_message == "not authenticated"
    assert scheduler.active_count == 0
    assert identity.calls == []
    with pytest.raises(AuthenticationMissing):
        verifier.raise_for_status()

def test_times_out_when_never_confirmed(user, fake_identity):
    identity = fake_identity(user=user)
    verifier, scheduler = make_verifier(identity, timeout_ms=20_000, interval_ms=2_000)

    async def scenario():
        verifier.start()
        assert verifier.status is VerificationStatus.PENDING
        assert scheduler.active_count == 2
        await scheduler.advance(19_999)
        assert verifier.status is VerificationStatus.PENDING
        await scheduler.advance(1)
        assert verifier.status is VerificationStatus.TIMEOUT
        polls = len(identity.calls)
        await scheduler.advance(20_000 + 2_000)
        return polls

    polls = asyncio.run(scenario())
    assert polls == 9
    assert len(identity.calls) == 9
    assert verifier.status is VerificationStatus.TIMEOUT
    assert scheduler.active_count == 0
    with pytest.raises(VerificationTimeout):
        verifier.raise_for_status()

def test_verified_at_the_confirming_tick(user, fake_identity):
    # Ticks land at 2000, 4000, 6000; the third sees the flag.
    identity = fake_identity(user=user, donor_from_call=3)
    verifier, scheduler = make_verifier(identity, timeout_ms=20_000, interval_ms=2_000)

    async def scenario():
        verifier.start()
        await scheduler.advance(5_999)
        assert verifier.status is VerificationStatus.PENDING
        await scheduler.advance(1)
        assert verifier.status is VerificationStatus.VERIFIED
        assert scheduler.now() == 6_000
        await scheduler.advance(14_000 + 2_000)

    asyncio.run(scenario())
    assert verifier.status is VerificationStatus.VERIFIED
    assert len(identity.calls) == 3
    assert scheduler.active_count == 0

def test_local_flag_set_while_pending_verifies_without_fetch(user, fake_identity):
    identity = fake_identity(user=user)
    flags = MemoryKeyValueStore()
    verifier, scheduler = make_verifier(identity, flags)

    async def scenario():
        verifier.start()
        await scheduler.advance(2_000)
        flags.set_flag("donorVerified")
        await scheduler.advance(2_000)

    asyncio.run(scenario())
    assert verifier.status is VerificationStatus.VERIFIED
    assert len(identity.calls) == 1

def test_poll_errors_do_not_change_status(user, fake_identity):
    identity = fake_identity(user=user, donor_from_call=3, failing_calls={1, 2})
    verifier, scheduler = make_verifier(identity)
    seen = []
    verifier.subscribe(seen.append)

    async def scenario():
        verifier.start()
        await scheduler.advance(4_000)
        assert verifier.status is VerificationStatus.PENDING
        await scheduler.advance(2_000)

    asyncio.run(scenario())
    assert verifier.status is VerificationStatus.VERIFIED
    assert seen == [VerificationStatus.PENDING, VerificationStatus.VERIFIED]

def test_stop_is_idempotent_and_freezes_status(user, fake_identity):
    identity = fake_identity(user=user, donor_from_call=1)
    verifier, scheduler = make_verifier(identity)
    seen = []

    async def scenario():
        verifier.start()
        verifier.subscribe(seen.append)
        verifier.stop()
        verifier.stop()
        await scheduler.advance(60_000)

    asyncio.run(scenario())
    assert verifier.status is VerificationStatus.PENDING
    assert not verifier.active
    assert scheduler.active_count == 0
    assert identity.calls == []
    assert seen == []

def test_restart_keeps_a_single_timer_pair(user, fake_identity):
    identity = fake_identity(user=None)
    verifier, scheduler = make_verifier(identity)

    verifier.start()
    assert verifier.status is VerificationStatus.ERROR

    identity.user = user
    verifier.start()
    assert verifier.status is VerificationStatus.PENDING
    assert verifier.error_message == ""
    verifier.start()
    verifier.start()
    assert scheduler.active_count == 2

def test_new_session_after_timeout(user, fake_identity):
    identity = fake_identity(user=user)
    verifier, scheduler = make_verifier(identity, timeout_ms=4_000, interval_ms=1_000)

    async def scenario():
        verifier.start()
        await scheduler.advance(4_000)
        assert verifier.status is VerificationStatus.TIMEOUT
        identity.donor_from_call = len(identity.calls) + 1
        verifier.start()
        assert verifier.session.started_at == 4_000
        await scheduler.advance(1_000)

    asyncio.run(scenario())
    assert verifier.status is VerificationStatus.VERIFIED

def test_late_response_is_ignored(user, fake_identity):
    class SlowIdentity(fake_identity):
        async def fetch_profile(self, user_id):
            self.calls.append(user_id)
            await asyncio.sleep(0.05)
            return {"id": user_id, "donorVerified": True}

    async def scenario():
        identity = SlowIdentity(user=user)
        verifier = PaymentVerifier(identity, MemoryKeyValueStore(), AsyncioScheduler(),
                                   timeout_ms=30, interval_ms=10)
        verifier.start()
        await asyncio.sleep(0.01 * 15)
        return verifier, identity

    verifier, identity = asyncio.run(scenario())
    assert identity.calls
    assert verifier.status is VerificationStatus.TIMEOUT

def test_wait_returns_terminal_status(user, fake_identity):
    async def scenario():
        identity = fake_identity(user=user, donor_from_call=2)
        verifier = PaymentVerifier(identity, MemoryKeyValueStore(), AsyncioScheduler(),
                                   timeout_ms=1_000, interval_ms=10)
        verifier.start()
        return await verifier.wait()

    assert asyncio.run(scenario()) is VerificationStatus.VERIFIED

@pytest.mark.parametrize("value, expected", [
    (True, True), (False, False), ("true", True), ("TRUE", True), ("false", False),
    (1, True), (0, False), (None, False), ({}, False),
])
def test_is_truthy_flag(value, expected):
    assert is_truthy_flag(value) is expected
