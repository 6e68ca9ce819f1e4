from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

import numpy as np

from .errors import UnsupportedEnvironment
from .media import AudioSink, ChannelBuffers

try:
    import sounddevice as sd
except (ImportError, OSError):  # OSError: PortAudio library missing
    sd = None

log = logging.getLogger(__name__)

DEVICE_SAMPLE_RATE = 48000


@dataclass(frozen=True)
class ScheduledBuffer:
    start: float  # seconds on the audio clock
    duration: float
    channels: int
    frames: int

    @property
    def end(self) -> float:
        return self.start + self.duration


def to_frames(channels: ChannelBuffers, out_channels: int) -> np.ndarray:
    """Planar channel buffers -> interleaved float32 array of shape (frames, out_channels)."""
    planar = [np.asarray(c, dtype=np.float32) for c in channels]
    if out_channels <= len(planar):
        planar = planar[:out_channels]
    else:
        # Mono (or short) layouts repeat the last channel.
        planar = planar + [planar[-1]] * (out_channels - len(planar))
    return np.stack(planar, axis=1)


def resample(frames: np.ndarray, count: int) -> np.ndarray:
    """Linear resample of a (frames, channels) array to exactly `count` frames."""
    n = frames.shape[0]
    if count <= 0:
        return np.zeros((0, frames.shape[1]), dtype=np.float32)
    if n == count:
        return frames.astype(np.float32, copy=False)
    if n == 0:
        return np.zeros((count, frames.shape[1]), dtype=np.float32)
    src_x = np.arange(n, dtype=np.float64)
    dst_x = np.linspace(0.0, n - 1, count)
    out = np.empty((count, frames.shape[1]), dtype=np.float32)
    for c in range(frames.shape[1]):
        out[:, c] = np.interp(dst_x, src_x, frames[:, c])
    return out


class SpeakerSink:
    """
    Audio output on the default sound device through a sounddevice OutputStream.

    Buffers are queued at absolute positions on the stream's own clock and the
    stream callback copies whatever overlaps the block being rendered. The
    clock is the number of frames handed to the device, so `current_time`
    only advances while the stream runs.
    """

    def __init__(
        self,
        sample_rate: int = DEVICE_SAMPLE_RATE,
        channels: int = 2,
        blocksize: int = 1024,
        device: Optional[Any] = None,
        stream_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        if stream_factory is None:
            if sd is None:
                raise UnsupportedEnvironment("sounddevice/PortAudio is not available; preview audio is disabled")
            stream_factory = sd.OutputStream
        self.sample_rate = int(sample_rate)
        self.channels = max(1, int(channels))
        self.blocksize = int(blocksize)
        self.device = device
        self._stream_factory = stream_factory
        self._stream: Optional[Any] = None
        self._lock = threading.Lock()
        self._queue: List[Tuple[int, np.ndarray]] = []  # (start frame, samples)
        self._position = 0  # frames delivered to the device

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._position / float(self.sample_rate)

    def _ensure_stream(self) -> None:
        if self._stream is not None:
            return
        self._stream = self._stream_factory(
            samplerate=self.sample_rate,
            channels=self.channels,
            dtype="float32",
            blocksize=self.blocksize,
            device=self.device,
            callback=self._callback,
        )
        self._stream.start()
        log.info("Audio output started: %d Hz, %d ch", self.sample_rate, self.channels)

    def play(self, channels: ChannelBuffers, sample_rate: int, at: float) -> None:
        samples = to_frames(channels, self.channels)
        if sample_rate != self.sample_rate:
            count = int(round(samples.shape[0] * self.sample_rate / float(sample_rate)))
            samples = resample(samples, count)
        if samples.shape[0] == 0:
            return
        start = int(round(at * self.sample_rate))
        with self._lock:
            self._queue.append((start, samples))
        self._ensure_stream()

    def flush(self) -> None:
        with self._lock:
            self._queue.clear()

    def _callback(self, outdata, frames, time_info, status) -> None:
        if status:
            log.debug("audio stream status: %s", status)
        outdata.fill(0)
        with self._lock:
            block_start = self._position
            block_end = block_start + frames
            keep: List[Tuple[int, np.ndarray]] = []
            for start, samples in self._queue:
                end = start + samples.shape[0]
                lo = max(start, block_start)
                hi = min(end, block_end)
                if hi > lo:
                    outdata[lo - block_start : hi - block_start] += samples[lo - start : hi - start]
                if end > block_end:
                    keep.append((start, samples))
            self._queue = keep
            self._position = block_end

    def close(self) -> None:
        self.flush()
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()


class AudioScheduler:
    """
    Schedules decoded audio so buffers never overlap.

    Each buffer starts at max(end of previous buffer, now on the audio clock),
    so late buffers are pushed back rather than stacked on top of each other.
    """

    def __init__(self, sink: AudioSink) -> None:
        self.sink = sink
        self.next_time: float = sink.current_time

    @property
    def lead(self) -> float:
        """Seconds of audio queued ahead of the audio clock."""
        return max(0.0, self.next_time - self.sink.current_time)

    def reset(self) -> None:
        self.sink.flush()
        self.next_time = self.sink.current_time

    def schedule(self, channels: ChannelBuffers, sample_rate: int) -> Optional[ScheduledBuffer]:
        if not channels:
            return None
        frames = len(channels[0])
        if any(len(c) != frames for c in channels):
            raise ValueError("audio channel buffers must have equal length")
        if frames == 0:
            return None
        if sample_rate <= 0:
            raise ValueError(f"invalid sample rate: {sample_rate}")

        duration = frames / float(sample_rate)
        start = max(self.next_time, self.sink.current_time)
        self.sink.play(channels, sample_rate, start)
        self.next_time = start + duration
        log.debug("audio scheduled at %.3f (%d ch, %.2f ms), next %.3f", start, len(channels), duration * 1000.0, self.next_time)
        return ScheduledBuffer(start=start, duration=duration, channels=len(channels), frames=frames)
