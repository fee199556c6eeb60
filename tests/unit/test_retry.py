from signalflow.utils.retry import compute_backoff, compute_keepalive_delay


def test_backoff_doubles_per_attempt():
    assert compute_backoff(1, base=0.1, jitter=0) == 0.2
    assert compute_backoff(4, base=0.1, jitter=0) == 1.6


def test_backoff_jitter_is_bounded():
    for _ in range(50):
        assert 0.8 <= compute_backoff(3, base=0.1, jitter=1.0) <= 1.8


def test_keepalive_delay_within_ten_percent():
    for _ in range(50):
        assert 54 <= compute_keepalive_delay(60) <= 66
