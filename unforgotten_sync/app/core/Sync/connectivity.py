# connectivity.py
# Connectivity flag fed by the host platform

from typing import Callable, List

from loguru import logger


class NetworkMonitor:
    """Tracks whether the device is online and tells listeners about transitions."""

    def __init__(self, is_connected: bool = True):
        self._connected = is_connected
        self._status_callbacks: List[Callable[[bool], None]] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    def add_status_callback(self, callback: Callable[[bool], None]):
        """
        Add callback for connectivity changes

        Args:
            callback: Function called with the new state when it changes
        """
        self._status_callbacks.append(callback)

    def remove_status_callback(self, callback: Callable[[bool], None]):
        if callback in self._status_callbacks:
            self._status_callbacks.remove(callback)

    def set_connected(self, connected: bool):
        if connected == self._connected:
            return
        self._connected = connected
        logger.info(f"Network {'reconnected' if connected else 'lost'}")
        for callback in list(self._status_callbacks):
            try:
                callback(connected)
            except Exception as e:
                logger.error(f"Error in connectivity callback: {e}")
