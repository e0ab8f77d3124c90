# -*- coding: utf-8 -*-
"""
Cooperative per-frame scheduling for the non-authoritative visual weights.

The allocation core never talks to a UI runtime directly. It asks a
``FrameScheduler`` for "the next tick" and gets back a token it can cancel.
``ManualFrameScheduler`` drives ticks explicitly (tests, batch rendering,
the Streamlit demo); a browser or game loop would wrap its own frame
callback behind the same two methods.
"""

from __future__ import annotations

import itertools
import logging
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol

import numpy as np

from survey_config import AllocationSettings

logger = logging.getLogger(__name__)


class FrameScheduler(Protocol):
    def schedule(self, callback: Callable[[], None]) -> int:
        ...

    def cancel(self, token: int) -> None:
        ...


class ManualFrameScheduler:
    """Frame scheduler whose ticks are run on demand."""

    def __init__(self):
        self._pending: Dict[int, Callable[[], None]] = {}
        self._tokens = itertools.count(1)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def schedule(self, callback: Callable[[], None]) -> int:
        token = next(self._tokens)
        self._pending[token] = callback
        return token

    def cancel(self, token: int) -> None:
        self._pending.pop(token, None)

    def run_pending(self) -> int:
        """Run one frame: every callback queued before this call."""
        queued = list(self._pending.items())
        self._pending.clear()
        for _token, callback in queued:
            callback()
        return len(queued)

    def flush(self, max_frames: int = 1000) -> int:
        """Run frames until nothing is scheduled. Returns the frame count."""
        frames = 0
        while self._pending and frames < max_frames:
            self.run_pending()
            frames += 1
        if self._pending:
            logger.warning("Frame loop still scheduled after %d frames.", max_frames)
        return frames


class VisualSmoother:
    """
    Eases a visual weight vector toward the authoritative target.

    Each tick moves every visual value a fixed fraction (``smoothing``) of the
    way to its target. The dragged category snaps, deactivated categories
    sit at 0, and a value within ``settle_eps`` of its target snaps to it.
    The loop reschedules itself only while something moved.
    """

    def __init__(
        self,
        categories: Iterable[str],
        scheduler: FrameScheduler,
        settings: Optional[AllocationSettings] = None,
        on_frame: Optional[Callable[[Dict[str, float]], None]] = None,
    ):
        self.settings = settings or AllocationSettings()
        self.scheduler = scheduler
        self.on_frame = on_frame
        self.categories = tuple(categories)
        self.visual: Dict[str, float] = {c: 0.0 for c in self.categories}
        self._target: Dict[str, float] = dict(self.visual)
        self._dragging: Optional[str] = None
        self._token: Optional[int] = None
        self.frames_run = 0

    @property
    def is_running(self) -> bool:
        return self._token is not None

    def snap(self, weights: Mapping[str, float]) -> None:
        """Jump straight to ``weights`` and stop any running loop."""
        self.cancel()
        self.visual = {c: float(weights.get(c, 0.0)) for c in self.categories}
        self._target = dict(self.visual)
        self._dragging = None

    def retarget(self, weights: Mapping[str, float], deactivated=(), dragging: Optional[str] = None) -> None:
        """Point the loop at a new authoritative vector and make sure it runs."""
        self._target = {
            c: 0.0 if c in deactivated else float(np.clip(weights.get(c, 0.0), 0.0, 1.0))
            for c in self.categories
        }
        for c in deactivated:
            self.visual[c] = 0.0
        self._dragging = dragging
        self._request()

    def cancel(self) -> None:
        if self._token is not None:
            self.scheduler.cancel(self._token)
            self._token = None

    def _request(self) -> None:
        if self._token is None:
            self._token = self.scheduler.schedule(self._tick)

    def _tick(self) -> None:
        self._token = None
        self.frames_run += 1
        smoothing = self.settings.smoothing
        settle_eps = self.settings.settle_eps

        changed: List[str] = []
        next_visual = dict(self.visual)
        for category in self.categories:
            current = next_visual[category]
            target = self._target[category]
            if category == self._dragging or abs(target - current) <= settle_eps:
                updated = target
            else:
                updated = current + (target - current) * smoothing
            if updated != current:
                next_visual[category] = updated
                changed.append(category)

        if not changed:
            return
        self.visual = next_visual
        if self.on_frame is not None:
            self.on_frame(dict(next_visual))
        self._request()
