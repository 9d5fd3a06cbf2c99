"""System load sampling for admission throttling.

Each poll is a fresh sample; nothing is smoothed between calls beyond what the
kernel's 1-minute load average already provides.
"""

from __future__ import annotations

import logging

import psutil

from wpcron.config.settings import MonitorConfig
from wpcron.registry.records import ThrottleSignal

logger = logging.getLogger(__name__)


class ResourceMonitor:
    def __init__(self, config: MonitorConfig):
        self._config = config
        if not config.cpu_sample_seconds:
            # Baseline for the first non-blocking sample; psutil returns 0.0 without one.
            psutil.cpu_percent(interval=None)

    def cpu_percent(self) -> float:
        # A zero sample window means non-blocking: psutil compares against its previous call.
        return float(psutil.cpu_percent(interval=self._config.cpu_sample_seconds or None))

    def load_average(self) -> float:
        return float(psutil.getloadavg()[0])

    def core_count(self) -> int:
        return psutil.cpu_count(logical=True) or 1

    def should_throttle(self) -> ThrottleSignal:
        cfg = self._config

        cpu = self.cpu_percent()
        if cpu > cfg.cpu_threshold_percent:
            return ThrottleSignal(True, f"CPU usage {cpu:.0f}% exceeds threshold {cfg.cpu_threshold_percent:g}%")

        load = self.load_average()
        cores = self.core_count()
        limit = cfg.load_factor * cores
        if load > limit:
            return ThrottleSignal(True, f"Load average {load:.2f} exceeds safe threshold {limit:g} ({cores} cores)")

        return ThrottleSignal(False)
