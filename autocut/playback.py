"""
Cooperative preview playback.

One asyncio task drives the loop. Every tick fully awaits its decode and
draw before the next tick is scheduled. Pausing bumps the loop id instead of
cancelling the task: an in-flight decode finishes, sees it is stale, and its
result is released without drawing.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Awaitable, Callable, Optional

from .audio import AudioScheduler
from .errors import EmptyTimeline
from .filters import filter_stack
from .media import Surface
from .model import US_PER_SEC
from .timeline import Timeline, source_time_at

log = logging.getLogger(__name__)


class PlaybackState(enum.Enum):
    PAUSED = "paused"
    PLAYING = "playing"


class PlaybackScheduler:
    def __init__(
        self,
        timeline: Timeline,
        surface: Surface,
        audio: Optional[AudioScheduler],
        clock: Callable[[], float] = time.monotonic,
        tick_interval: float = 1.0 / 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_time: Optional[Callable[[int], None]] = None,
        on_ended: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self.timeline = timeline
        self.surface = surface
        self.audio = audio
        self.clock = clock
        self.tick_interval = max(0.0, float(tick_interval))
        self._sleep = sleep
        self.on_time = on_time
        self.on_ended = on_ended
        self.on_error = on_error

        self.state = PlaybackState.PAUSED
        self.current_time = 0  # microseconds, output timeline
        self.next_wake: Optional[float] = None
        self.last_error: Optional[BaseException] = None
        self._loop_id = 0
        self._last_tick: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_playing(self) -> bool:
        return self.state is PlaybackState.PLAYING

    @property
    def loop_id(self) -> int:
        return self._loop_id

    def is_current(self, loop_id: int) -> bool:
        return self.is_playing and loop_id == self._loop_id

    def play(self) -> asyncio.Task:
        """Start the loop; must be called from a running event loop."""
        if self.timeline.is_empty():
            raise EmptyTimeline("No clips to play")
        if self.is_playing and self._task is not None:
            return self._task

        if self.current_time >= self.timeline.total_duration():
            self.current_time = 0
        self.state = PlaybackState.PLAYING
        self.last_error = None
        self._loop_id += 1
        self._last_tick = self.clock()
        self._reset_audio()
        loop_id = self._loop_id
        log.info("Playback started at %d us", self.current_time)
        self._task = asyncio.get_running_loop().create_task(self._run(loop_id))
        return self._task

    def pause(self) -> None:
        was_playing = self.is_playing
        self.state = PlaybackState.PAUSED
        self._loop_id += 1
        self._last_tick = None
        self.next_wake = None
        self._task = None
        self._reset_audio()
        if was_playing:
            log.info("Playback paused at %d us", self.current_time)

    async def stop(self) -> None:
        self.pause()
        self.current_time = 0
        await self.render_frame(0)

    async def seek(self, time_us: int) -> int:
        t = max(0, min(int(time_us), self.timeline.total_duration()))
        self.current_time = t
        if self.is_playing:
            # The running loop picks the new position up on its next tick.
            self._reset_audio()
        else:
            await self.render_frame(t)
        return t

    async def _run(self, loop_id: int) -> None:
        try:
            while self.is_current(loop_id):
                if await self.tick(loop_id):
                    break
                self.next_wake = self.clock() + self.tick_interval
                await self._sleep(self.tick_interval)
        except Exception as exc:
            if loop_id != self._loop_id:
                log.debug("discarding error from stale playback loop: %s", exc)
                return
            log.error("Playback stopped: %s", exc)
            self.pause()
            self.last_error = exc
            if self.on_error is not None:
                self.on_error(exc)

    async def tick(self, loop_id: int) -> bool:
        """
        Advance the virtual clock and render one frame.

        Returns True when the loop should stop (end reached or superseded).
        """
        now = self.clock()
        delta = max(0.0, now - self._last_tick) if self._last_tick is not None else 0.0
        self._last_tick = now

        active = self.timeline.active_sprite_at(self.current_time)
        rate = active.playback_rate if active is not None else 1.0
        self.current_time += int(round(delta * US_PER_SEC * rate))

        total = self.timeline.total_duration()
        if self.current_time >= total:
            self.current_time = total
            self.pause()
            log.info("Playback ended")
            if self.on_ended is not None:
                self.on_ended()
            return True

        log.debug("tick at %d us / %d us", self.current_time, total)
        await self.render_frame(self.current_time, loop_id)
        if not self.is_current(loop_id):
            return True
        if self.on_time is not None:
            self.on_time(self.current_time)
        return False

    async def render_frame(self, time_us: int, loop_id: Optional[int] = None) -> bool:
        """
        Draw the frame at an output-timeline time.

        With a `loop_id`, results that arrive after the loop was superseded are
        released without drawing, and audio is scheduled. Without one (seek,
        stop) only the picture is drawn. Returns True if a frame was drawn.
        """
        sprite = self.timeline.active_sprite_at(time_us)
        if sprite is None:
            self.surface.clear()
            log.debug("No active sprite at %d us", time_us)
            return False

        source_time = source_time_at(sprite, time_us)
        result = await sprite.handle.decode_at(source_time)

        if loop_id is not None and not self.is_current(loop_id):
            result.release()
            return False

        drawn = False
        try:
            if result.video is not None:
                self.surface.clear()
                self.surface.draw_frame(result.video, sprite.opacity)
                self.surface.apply_filter_stack(filter_stack(sprite.filters))
                drawn = True
        finally:
            result.release()

        if loop_id is not None and result.audio and self.audio is not None:
            # Scaling the rate plays the buffer in the same wall time as the picture.
            rate = int(round(sprite.material.metadata.audio_sample_rate * sprite.playback_rate))
            self.audio.schedule(result.audio, rate)
        return drawn

    def _reset_audio(self) -> None:
        if self.audio is not None:
            self.audio.reset()
