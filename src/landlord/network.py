"""
Network reachability monitoring.

ConnectivityMonitor turns raw reachability reports into a connected flag,
status-change notifications and an edge-triggered "restored" signal. It knows
nothing about sync. ReachabilityProbe is the reporter used on desktop/server
hosts: it polls a URL with requests on a background thread.
"""
import enum
import logging
import threading
from typing import Callable, Optional

import requests

logger = logging.getLogger("landlord.network")


class Reachability(str, enum.Enum):
    """Raw path status reported by the platform."""
    SATISFIED = "satisfied"
    UNSATISFIED = "unsatisfied"
    REQUIRES_CONNECTION = "requires_connection"


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"


class InterfaceType(str, enum.Enum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    WIRED = "wired"
    OTHER = "other"


class ConnectivityMonitor:
    """Observes reachability reports and emits connectivity events."""

    def __init__(self):
        self._lock = threading.Lock()
        self._status = ConnectionStatus.UNKNOWN
        self._interface: Optional[InterfaceType] = None
        self._was_connected = False
        self._status_listeners: list[Callable[[ConnectionStatus], None]] = []
        self._restored_listeners: list[Callable[[], None]] = []

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        # Unknown counts as not connected
        return self._status == ConnectionStatus.CONNECTED

    @property
    def interface_type(self) -> Optional[InterfaceType]:
        return self._interface

    def subscribe_status(self, listener: Callable[[ConnectionStatus], None]):
        """Subscribe to status changes. Returns an unsubscribe callable."""
        with self._lock:
            self._status_listeners.append(listener)
        return lambda: self._remove(self._status_listeners, listener)

    def subscribe_restored(self, listener: Callable[[], None]):
        """Subscribe to disconnected -> connected edges. Returns an unsubscribe callable."""
        with self._lock:
            self._restored_listeners.append(listener)
        return lambda: self._remove(self._restored_listeners, listener)

    def _remove(self, listeners, listener):
        with self._lock:
            if listener in listeners:
                listeners.remove(listener)

    def update(self, reachability: Reachability, interface: Optional[InterfaceType] = None):
        """
        Handle a reachability report from the platform.

        Args:
            reachability: Raw path status
            interface: Interface type hint, if known
        """
        connected = reachability == Reachability.SATISFIED
        new_status = ConnectionStatus.CONNECTED if connected else ConnectionStatus.DISCONNECTED

        with self._lock:
            changed = new_status != self._status
            # The very first connected report is not a restore
            restored = connected and not self._was_connected and self._status != ConnectionStatus.UNKNOWN
            self._status = new_status
            self._interface = interface
            self._was_connected = connected
            status_listeners = list(self._status_listeners)
            restored_listeners = list(self._restored_listeners)

        if changed:
            logger.info(f"Status changed to: {new_status.value}")
            for listener in status_listeners:
                self._notify(listener, new_status)

        if restored:
            logger.info("Network restored, notifying...")
            for listener in restored_listeners:
                self._notify(listener)

    @staticmethod
    def _notify(listener, *args):
        try:
            listener(*args)
        except Exception as e:
            logger.error(f"Connectivity listener failed: {type(e).__name__}: {e}")

    @property
    def status_description(self) -> str:
        return {
            ConnectionStatus.CONNECTED: "Connected",
            ConnectionStatus.DISCONNECTED: "Disconnected",
            ConnectionStatus.UNKNOWN: "Unknown",
        }[self._status]


class ReachabilityProbe:
    """Feeds a ConnectivityMonitor by polling a URL."""

    def __init__(self, monitor: ConnectivityMonitor, url: str, interval: float = 5.0,
                 timeout: float = 3.0, interface: Optional[InterfaceType] = InterfaceType.OTHER):
        """
        Initialize the probe.

        Args:
            monitor: Monitor to report into
            url: URL to probe; any HTTP response means reachable
            interval: Seconds between probes
            timeout: Per-probe request timeout
            interface: Interface hint reported with each probe
        """
        self.monitor = monitor
        self.url = url
        self.interval = interval
        self.timeout = timeout
        self.interface = interface
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def probe_once(self) -> Reachability:
        try:
            requests.head(self.url, timeout=self.timeout)
            reachability = Reachability.SATISFIED
        except requests.exceptions.RequestException as e:
            logger.debug(f"Reachability probe failed: {type(e).__name__}")
            reachability = Reachability.UNSATISFIED
        self.monitor.update(reachability, self.interface)
        return reachability

    def _run(self):
        while not self._stop.wait(self.interval):
            self.probe_once()

    def start(self):
        """Probe once synchronously, then keep probing in the background."""
        logger.info(f"Started monitoring {self.url} every {self.interval}s")
        self.probe_once()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="reachability-probe", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.timeout + 1)
            self._thread = None
        logger.info("Stopped monitoring")
