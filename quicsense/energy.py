"""Energy estimate from the time spent in each radio and CPU mode."""

from __future__ import annotations

from dataclasses import dataclass

VOLTAGE = 3.0
CPU_CURRENT = 0.0018
LPM_CURRENT = 0.0000545
TX_CURRENT = 0.0174
RX_CURRENT = 0.0188


@dataclass(frozen=True)
class EnergyReport:
    """Energy per mode, in millijoules."""

    cpu: float
    lpm: float
    tx: float
    rx: float

    @property
    def total(self) -> float:
        return self.cpu + self.lpm + self.tx + self.rx

    def format(self) -> str:
        return (
            f"Energy (mJ): CPU={self.cpu:.3f}, LPM={self.lpm:.3f}, "
            f"TX={self.tx:.3f}, RX={self.rx:.3f}, TOTAL={self.total:.3f}"
        )

    def __str__(self) -> str:
        return self.format()


def _millijoules(current: float, seconds: float) -> float:
    if seconds < 0:
        raise ValueError("time spent in a mode must not be negative")
    return VOLTAGE * current * seconds * 1000.0


def energy_consumption(
    cpu_seconds: float, lpm_seconds: float, tx_seconds: float, rx_seconds: float
) -> EnergyReport:
    """Turn seconds spent in CPU, low-power, transmit and listen modes into energy."""
    return EnergyReport(
        cpu=_millijoules(CPU_CURRENT, cpu_seconds),
        lpm=_millijoules(LPM_CURRENT, lpm_seconds),
        tx=_millijoules(TX_CURRENT, tx_seconds),
        rx=_millijoules(RX_CURRENT, rx_seconds),
    )