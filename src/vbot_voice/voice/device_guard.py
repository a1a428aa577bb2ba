"""Exclusive ownership of the microphone and the speaker.

Only one session may hold a device class at a time. Acquiring a class that is
already held first tears the previous holder down through the callback it
registered, so a new recording never races an orphaned one.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class DeviceClass(str, Enum):
    INPUT = "input"
    OUTPUT = "output"


class DeviceLease:
    """Proof of ownership of one device class. Release is idempotent."""

    def __init__(
        self,
        guard: "DeviceGuard",
        device_class: DeviceClass,
        owner: str,
        on_preempt: Callable[[], None] | None,
    ) -> None:
        self._guard = guard
        self.device_class = device_class
        self.owner = owner
        self._on_preempt = on_preempt
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._guard._drop(self)

    def _preempt(self) -> None:
        callback = self._on_preempt
        self._released = True
        if callback is None:
            return
        try:
            callback()
        except Exception:
            logger.exception(f"[VOICE][AUDIO] teardown of preempted {self.device_class.value} owner={self.owner} failed")

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"DeviceLease({self.device_class.value}, owner={self.owner!r}, {state})"


class DeviceGuard:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._holders: dict[DeviceClass, DeviceLease] = {}

    def acquire(
        self,
        device_class: DeviceClass,
        owner: str,
        on_preempt: Callable[[], None] | None = None,
    ) -> DeviceLease:
        """Take ``device_class`` for ``owner``, tearing down any previous holder first."""
        with self._lock:
            previous = self._holders.pop(device_class, None)
        if previous is not None:
            logger.info(
                f"[VOICE][AUDIO] {device_class.value} preempted old_owner={previous.owner} new_owner={owner}"
            )
            previous._preempt()

        lease = DeviceLease(self, device_class, owner, on_preempt)
        with self._lock:
            self._holders[device_class] = lease
        return lease

    def holder(self, device_class: DeviceClass) -> DeviceLease | None:
        with self._lock:
            return self._holders.get(device_class)

    def held(self) -> dict[DeviceClass, str]:
        """Current holders by device class (resource audit)."""
        with self._lock:
            return {dc: lease.owner for dc, lease in self._holders.items()}

    def _drop(self, lease: DeviceLease) -> None:
        with self._lock:
            if self._holders.get(lease.device_class) is lease:
                del self._holders[lease.device_class]


# Process-wide guard; controllers and devices share it unless a test injects its own.
device_guard = DeviceGuard()
