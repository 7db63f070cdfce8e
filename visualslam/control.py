"""Pending mode-change and reset requests shared between the system's threads."""

from __future__ import annotations

import enum
import threading


class ModeChange(enum.Flag):
    """Localization-mode changes requested since they were last taken."""

    NONE = 0
    ACTIVATE_LOCALIZATION = enum.auto()
    DEACTIVATE_LOCALIZATION = enum.auto()


class ModeRequests:
    """Thread-safe holder of localization-mode and reset requests.

    Requests are set from any thread and taken, once, by the tracking thread
    before it processes the next frame.
    """

    def __init__(self) -> None:
        self._mode_lock = threading.Lock()
        self._reset_lock = threading.Lock()
        self._activate = False
        self._deactivate = False
        self._reset = False
        self._last_big_change = 0

    def activate_localization_mode(self) -> None:
        with self._mode_lock:
            self._activate = True

    def deactivate_localization_mode(self) -> None:
        with self._mode_lock:
            self._deactivate = True

    def request_reset(self) -> None:
        with self._reset_lock:
            self._reset = True

    def take_mode_change(self) -> ModeChange:
        """Return the pending mode changes and clear them.

        When both are pending, activation is to be applied before deactivation.
        """
        with self._mode_lock:
            change = ModeChange.NONE
            if self._activate:
                change |= ModeChange.ACTIVATE_LOCALIZATION
            if self._deactivate:
                change |= ModeChange.DEACTIVATE_LOCALIZATION
            self._activate = False
            self._deactivate = False
            return change

    def take_reset(self) -> bool:
        """Return whether a reset was requested, and clear the request."""
        with self._reset_lock:
            pending = self._reset
            self._reset = False
            return pending

    def map_changed(self, last_big_change_idx) -> bool:
        """Tell whether the map's big-change index grew since the last call."""
        with self._mode_lock:
            if self._last_big_change < last_big_change_idx:
                self._last_big_change = last_big_change_idx
                return True
            return False