from flamethrower.tokenbucket import TokenBucket


def test_first_call_only_starts_the_clock():
    bucket = TokenBucket(100)
    assert bucket.consume(1, 1000) is False


def test_refills_after_time_passes():
    bucket = TokenBucket(10)
    assert bucket.consume(1, 1000) is False
    assert bucket.consume(1, 1100) is True
    assert bucket.consume(1, 1100) is False


def test_no_refill_without_elapsed_time():
    bucket = TokenBucket(1000)
    bucket.consume(1, 5000)
    assert bucket.consume(1, 5000) is False


def test_zero_rate_never_allows():
    bucket = TokenBucket()
    results = [bucket.consume(1, t) for t in range(1000, 10000, 1000)]
    assert results == [False] * 9


def test_total_granted_bounded_by_rate():
    rate = 50
    bucket = TokenBucket(rate)
    bucket.consume(1, 1000)
    granted = sum(bucket.consume(1, 2000) for _ in range(rate * 2))
    assert granted == rate


def test_batch_larger_than_refill_is_refused():
    bucket = TokenBucket(10)
    bucket.consume(1, 1000)
    assert bucket.consume(50, 2000) is False
    assert bucket.consume(10, 2000) is True