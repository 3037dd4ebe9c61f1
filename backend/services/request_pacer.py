"""
Request Pacer - Fixed inter-request delay for upstream API calls.

Each (route_group, key) pair remembers whether it has made a request since
its last reset. The first request goes out immediately; every later one
sleeps for the route group's delay first. FetchOrchestrator resets a
tenant's key at the start of each load, so months within one load are
spaced out while separate loads start without waiting.

Delays come from backend/config/request_pacing.yaml, with built-in
defaults when the file is missing.

Usage:
    from services.request_pacer import RequestPacer

    pacer = RequestPacer()
    pacer.reset('mito')
    for month in months:
        pacer.wait('daily_accounts', 'mito')
        fetch(month)
"""
import time
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set, Tuple

import yaml

logger = logging.getLogger(__name__)

DEFAULT_DELAY_SECONDS = 0.2


class RequestPacer:
    """Fixed-delay pacing with route-group granularity."""

    def __init__(
        self,
        config_path: Optional[str] = None,
        delay_override: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize pacer.

        Args:
            config_path: Path to YAML config file.
                        Defaults to backend/config/request_pacing.yaml
            delay_override: If set, used for every route group (MF_REQUEST_DELAY_SECONDS)
            sleep: Sleep function (tests inject a recorder)
        """
        self.config_path = config_path or self._default_config_path()
        self.delay_override = delay_override
        self._sleep = sleep
        self._config = None
        self._seen: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    def _default_config_path(self) -> str:
        """Get default config path."""
        return str(
            Path(__file__).parent.parent / "config" / "request_pacing.yaml"
        )

    @property
    def config(self) -> Dict[str, Any]:
        """Load config (cached)."""
        if self._config is None:
            self._config = self._load_config()
        return self._config

    def _load_config(self) -> Dict[str, Any]:
        """Load pacing configuration from YAML."""
        try:
            with open(self.config_path, "r") as f:
                config = yaml.safe_load(f) or {}
                logger.info(f"Loaded request pacing from {self.config_path}")
                return config
        except FileNotFoundError:
            logger.warning(
                f"Request pacing config not found at {self.config_path}, using defaults"
            )
            return {
                "defaults": {"delay_seconds": DEFAULT_DELAY_SECONDS},
                "routes": {},
            }

    def get_delay(self, route_group: str = "default") -> float:
        """
        Get the delay for a route group.

        Route-level config overrides defaults; delay_override beats both.
        """
        if self.delay_override is not None:
            return float(self.delay_override)

        defaults = self.config.get("defaults", {}) or {}
        delay = defaults.get("delay_seconds", DEFAULT_DELAY_SECONDS)

        route_config = (self.config.get("routes", {}) or {}).get(route_group, {}) or {}
        if "delay_seconds" in route_config:
            delay = route_config["delay_seconds"]

        return float(delay)

    def wait(self, route_group: str = "default", key: str = "default") -> float:
        """
        Sleep before a request unless it is the first for this key.

        Args:
            route_group: Route group (e.g., 'daily_accounts')
            key: Independent pacing lane, usually the tenant id

        Returns:
            Seconds slept
        """
        lane = (route_group, key)
        with self._lock:
            first = lane not in self._seen
            self._seen.add(lane)

        delay = self.get_delay(route_group)
        if first or delay <= 0:
            return 0.0

        logger.debug(f"Pacing {route_group}/{key}: sleeping {delay:.2f}s")
        self._sleep(delay)
        return delay

    def reset(self, key: Optional[str] = None) -> None:
        """Forget prior requests for a key (or for every key)."""
        with self._lock:
            if key is None:
                self._seen.clear()
            else:
                self._seen = {lane for lane in self._seen if lane[1] != key}

    def get_status(self, route_group: str = "default") -> Dict[str, Any]:
        with self._lock:
            active = sorted(k for g, k in self._seen if g == route_group)
        return {
            "route_group": route_group,
            "delay_seconds": self.get_delay(route_group),
            "active_keys": active,
        }
