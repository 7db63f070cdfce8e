"""Viewer settings and the thread-safe stop/finish handshake of the viewer loop."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Mapping

_DEFAULT_FPS = 30.0
_DEFAULT_WIDTH = 640
_DEFAULT_HEIGHT = 480


@dataclass(frozen=True)
class ViewerSettings:
    """Display parameters read from a settings mapping."""

    frame_period_ms: float = 1e3 / _DEFAULT_FPS
    image_width: int = _DEFAULT_WIDTH
    image_height: int = _DEFAULT_HEIGHT
    viewpoint_x: float = 0.0
    viewpoint_y: float = 0.0
    viewpoint_z: float = 0.0
    viewpoint_f: float = 0.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ViewerSettings":
        """Build settings from flat keys such as ``Camera.fps``; missing keys read as 0."""

        def number(key: str) -> float:
            return float(data.get(key, 0) or 0)

        fps = number("Camera.fps")
        if fps < 1:
            fps = _DEFAULT_FPS

        width = int(number("Camera.width"))
        height = int(number("Camera.height"))
        if width < 1 or height < 1:
            width, height = _DEFAULT_WIDTH, _DEFAULT_HEIGHT

        return cls(
            frame_period_ms=1e3 / fps,
            image_width=width,
            image_height=height,
            viewpoint_x=number("Viewer.ViewpointX"),
            viewpoint_y=number("Viewer.ViewpointY"),
            viewpoint_z=number("Viewer.ViewpointZ"),
            viewpoint_f=number("Viewer.ViewpointF"),
        )


class ViewerControl:
    """Stop and finish flags shared between the viewer loop and other threads.

    A new control counts as finished and stopped until ``start`` is called.
    """

    def __init__(self) -> None:
        self._finish_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True
        self._stopped = True
        self._stop_requested = False

    def start(self) -> None:
        """Mark the viewer loop as running."""
        with self._finish_lock:
            self._finished = False
        with self._stop_lock:
            self._stopped = False

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished

    def request_stop(self) -> None:
        """Ask the loop to pause; ignored while it is already stopped."""
        with self._stop_lock:
            if not self._stopped:
                self._stop_requested = True

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop(self) -> bool:
        """Honour a pending stop request unless finishing; return whether stopped now."""
        with self._stop_lock, self._finish_lock:
            if self._finish_requested:
                return False
            if self._stop_requested:
                self._stopped = True
                self._stop_requested = False
                return True
            return False

    def release(self) -> None:
        with self._stop_lock:
            self._stopped = False