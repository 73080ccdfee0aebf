import random

from scrapy.settings import Settings

from noon_scraper.identities import HEADER_PROFILES, IdentityPool


def test_pool_fills_lazily_then_reuses():
    pool = IdentityPool(max_size=3, max_usage=100, rng=random.Random(1))
    first = [pool.acquire() for _ in range(3)]
    assert len({identity.key for identity in first}) == 3
    again = pool.acquire()
    assert again.key in {identity.key for identity in first}
    assert pool.created == 3
    assert len(pool) == 3


def test_identity_retired_after_max_usage():
    pool = IdentityPool(max_size=1, max_usage=2)
    first = pool.acquire()
    assert pool.acquire() is first
    assert first.retired
    assert pool.retired == 1
    replacement = pool.acquire()
    assert replacement is not first
    assert pool.created == 2


def test_error_score_retires_identity():
    pool = IdentityPool(max_size=2, max_error_score=2)
    identity = pool.acquire()
    pool.mark_bad(identity)
    pool.mark_good(identity)
    assert identity.error_score == 0.5
    pool.mark_bad(identity)
    assert not identity.retired
    pool.mark_bad(identity)
    assert identity.retired
    assert len(pool) == 0


def test_mark_good_floors_at_zero():
    pool = IdentityPool()
    identity = pool.acquire()
    pool.mark_good(identity)
    assert identity.error_score == 0.0


def test_retire_is_idempotent():
    pool = IdentityPool()
    identity = pool.acquire()
    pool.retire(identity)
    pool.retire(identity)
    assert pool.retired == 1


def test_profiles_and_proxies_rotate():
    pool = IdentityPool(max_size=4, proxies=["http://p1:8000", "http://p2:8000"])
    identities = [pool.acquire() for _ in range(4)]
    assert [i.proxy for i in identities] == ["http://p1:8000", "http://p2:8000"] * 2
    for identity in identities:
        assert identity.headers in HEADER_PROFILES
        assert "User-Agent" in identity.headers


def test_from_settings():
    settings = Settings({
        "IDENTITY_POOL_SIZE": 7,
        "IDENTITY_MAX_USAGE": 3,
        "IDENTITY_MAX_ERROR_SCORE": 2,
        "PROXY_URLS": "http://p1:8000,http://p2:8000",
    })
    pool = IdentityPool.from_settings(settings)
    assert (pool.max_size, pool.max_usage, pool.max_error_score) == (7, 3, 2.0)
    assert pool.proxies == ["http://p1:8000", "http://p2:8000"]
