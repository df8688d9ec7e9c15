import pytest

from quicsense.rtt import RttEstimator


def test_starts_empty():
    est = RttEstimator()
    assert (est.smoothed, est.variance, est.minimum, est.latest) == (0, 0, 0, 0)


def test_first_sample_seeds_estimate():
    est = RttEstimator()
    est.update(100)
    assert est.smoothed == 100
    assert est.minimum == 100
    assert est.latest == 100
    assert est.variance == 100 // 2


def test_equal_samples_keep_smoothed():
    est = RttEstimator()
    for _ in range(5):
        est.update(64)
    assert est.smoothed == 64
    assert est.minimum == 64
    assert est.variance <= 32


@pytest.mark.parametrize("samples", [[100, 20, 300], [5, 500, 1, 80], [40, 40, 60, 10]])
def test_invariants(samples):
    est = RttEstimator()
    for sample in samples:
        est.update(sample)
        assert est.latest == sample
    assert est.minimum == min(samples)
    assert min(samples) <= est.smoothed <= max(samples)
    assert est.variance >= 0


def test_smoothed_moves_toward_sample():
    est = RttEstimator()
    est.update(800)
    est.update(0 + 80)
    assert 80 < est.smoothed < 800
    before = est.smoothed
    est.update(2000)
    assert est.smoothed > before


def test_negative_sample_raises():
    with pytest.raises(ValueError):
        RttEstimator().update(-1)