import pytest

from quicsense.energy import EnergyReport, energy_consumption


def test_zero_time_costs_nothing():
    report = energy_consumption(0, 0, 0, 0)
    assert report.total == 0
    assert report.format() == (
        "Energy (mJ): CPU=0.000, LPM=0.000, TX=0.000, RX=0.000, TOTAL=0.000"
    )


def test_one_second_of_cpu():
    assert energy_consumption(1, 0, 0, 0).cpu == pytest.approx(5.4)


def test_total_is_sum_of_parts():
    report = energy_consumption(1.5, 20.0, 0.25, 0.75)
    assert report.total == pytest.approx(report.cpu + report.lpm + report.tx + report.rx)


def test_energy_is_linear_in_time():
    one = energy_consumption(1, 1, 1, 1)
    three = energy_consumption(3, 3, 3, 3)
    assert three.cpu == pytest.approx(3 * one.cpu)
    assert three.lpm == pytest.approx(3 * one.lpm)
    assert three.tx == pytest.approx(3 * one.tx)
    assert three.rx == pytest.approx(3 * one.rx)


def test_mode_ordering():
    report = energy_consumption(1, 1, 1, 1)
    assert report.lpm < report.cpu < report.tx < report.rx


def test_format_uses_three_decimals():
    report = EnergyReport(cpu=1.0, lpm=2.0, tx=3.0, rx=4.0)
    assert report.format() == "Energy (mJ): CPU=1.000, LPM=2.000, TX=3.000, RX=4.000, TOTAL=10.000"
    assert str(report) == report.format()


def test_negative_time_rejected():
    with pytest.raises(ValueError):
        energy_consumption(-1, 0, 0, 0)