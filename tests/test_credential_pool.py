import asyncio
from datetime import timedelta

import pytest

from upscaler.core.credential_pool import CredentialPool
from upscaler.core.topaz_client import CreditBalance
from upscaler.errors import InvalidCredential, NetworkError, RemoteRequestError, ValidationError

from fakes import FakeClient, FakeClock, build_pool


def tokens(credentials):
    return [c.token for c in credentials]


def test_round_robin_over_all_keys():
    pool, _ = asyncio.run(build_pool("key-aaaa-1", "key-bbbb-2", "key-cccc-3"))

    picks = [pool.next_eligible() for _ in range(4)]

    assert tokens(picks) == ["key-aaaa-1", "key-bbbb-2", "key-cccc-3", "key-aaaa-1"]
    assert picks[0].request_count == 2
    assert picks[0].last_used is not None


def test_rate_limited_key_is_skipped_until_reset():
    clock = FakeClock()
    pool, _ = asyncio.run(build_pool("key-aaaa-1", "key-bbbb-2", "key-cccc-3", clock=clock))
    second = pool.credentials[1]

    pool.mark_rate_limited(second, retry_after_ms=30000)
    assert second.rate_limit_reset == clock.now + timedelta(seconds=30)

    picks = [pool.next_eligible() for _ in range(3)]
    assert tokens(picks) == ["key-aaaa-1", "key-cccc-3", "key-aaaa-1"]

    clock.advance(31)
    assert pool.is_eligible(second)


def test_keys_without_credit_or_inactive_are_excluded():
    pool, _ = asyncio.run(build_pool("key-aaaa-1", "key-bbbb-2", "key-cccc-3"))
    first, second, third = pool.credentials
    first.credits = CreditBalance(available=0)
    pool.set_active(1, False)

    picks = [pool.next_eligible() for _ in range(3)]

    assert picks == [third, third, third]
    assert second.request_count == 0


def test_unknown_credit_balance_counts_as_eligible():
    pool, _ = asyncio.run(build_pool("key-aaaa-1"))
    credential = pool.credentials[0]
    credential.credits = None

    assert pool.is_eligible(credential)


def test_fallback_returns_earliest_reset_without_using_it():
    clock = FakeClock()
    pool, _ = asyncio.run(build_pool("key-aaaa-1", "key-bbbb-2", clock=clock))
    first, second = pool.credentials
    pool.mark_rate_limited(first, retry_after_ms=50000)
    pool.mark_rate_limited(second, retry_after_ms=10000)

    picked = pool.next_eligible()

    assert picked is second
    assert second.request_count == 0
    assert second.last_used is None


def test_fallback_without_any_reset_returns_first_key():
    pool, _ = asyncio.run(build_pool("key-aaaa-1", "key-bbbb-2"))
    pool.set_active(0, False)
    pool.set_active(1, False)

    assert pool.next_eligible() is pool.credentials[0]


def test_empty_pool_has_nothing_to_offer():
    pool = CredentialPool(client_factory=FakeClient)

    assert pool.next_eligible() is None
    assert pool.stats() == {"total_count": 0, "active_count": 0, "total_requests": 0, "rate_limited_count": 0}


def test_remove_resets_cursor_when_out_of_range():
    pool, _ = asyncio.run(build_pool("key-aaaa-1", "key-bbbb-2", "key-cccc-3"))
    pool.next_eligible()
    pool.next_eligible()  # cursor now 2

    removed = pool.remove(2)

    assert removed.token == "key-cccc-3"
    assert pool.next_eligible().token == "key-aaaa-1"
    assert pool.remove(10) is None


def test_add_validates_and_fetches_credits():
    pool, clients = asyncio.run(build_pool("key-aaaa-1"))

    credential = pool.credentials[0]
    assert clients["key-aaaa-1"].create_calls == 1
    assert credential.available_credits == 100
    assert credential.last_credit_check is not None
    assert credential.masked == "key-a..."


def test_add_rejects_blank_and_duplicate_tokens():
    pool, _ = asyncio.run(build_pool("key-aaaa-1"))

    with pytest.raises(ValidationError):
        asyncio.run(pool.add("   "))
    with pytest.raises(ValidationError):
        asyncio.run(pool.add("key-aaaa-1"))
    assert len(pool) == 1


@pytest.mark.parametrize("error", [
    InvalidCredential("Unauthorized"),
    RemoteRequestError("Bad request", status_code=400),
])
def test_add_rejected_key_raises_invalid_credential(error):
    def factory(token):
        client = FakeClient(token)
        client.create_errors.append(error)
        return client

    pool = CredentialPool(client_factory=factory)

    with pytest.raises(InvalidCredential):
        asyncio.run(pool.add("key-bad"))
    assert len(pool) == 0


def test_add_network_failure_propagates():
    def factory(token):
        client = FakeClient(token)
        client.create_errors.append(NetworkError("connection refused"))
        return client

    pool = CredentialPool(client_factory=factory)

    with pytest.raises(NetworkError):
        asyncio.run(pool.add("key-offline"))
    assert len(pool) == 0


def test_add_keeps_key_when_balance_lookup_fails():
    def factory(token):
        client = FakeClient(token)
        client.balance_error = NetworkError("timeout")
        return client

    pool = CredentialPool(client_factory=factory)
    credential = asyncio.run(pool.add("key-aaaa-1"))

    assert credential.credits is None
    assert len(pool) == 1


def test_refresh_failure_keeps_previous_snapshot():
    pool, clients = asyncio.run(build_pool("key-aaaa-1", "key-bbbb-2"))
    clients["key-aaaa-1"].balance_error = NetworkError("timeout")
    clients["key-bbbb-2"].credits = 42

    asyncio.run(pool.refresh_all_credits())

    first, second = pool.credentials
    assert first.available_credits == 100
    assert second.available_credits == 42


def test_stats_and_describe():
    clock = FakeClock()
    pool, _ = asyncio.run(build_pool("key-aaaa-1", "key-bbbb-2", "key-cccc-3", clock=clock))
    pool.next_eligible()
    pool.set_active(2, False)
    pool.mark_rate_limited(pool.credentials[1])

    assert pool.stats() == {
        "total_count": 3,
        "active_count": 2,
        "total_requests": 1,
        "rate_limited_count": 1,
    }

    listing = pool.describe()
    assert [entry["key"] for entry in listing] == ["key-a...", "key-b...", "key-c..."]
    assert listing[1]["is_rate_limited"] is True
    assert all("key-aaaa-1" not in str(entry.values()) for entry in listing)
