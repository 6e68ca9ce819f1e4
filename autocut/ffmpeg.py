from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Tuple

import numpy as np
from PIL import Image

from .audio import resample
from .errors import UnsupportedEnvironment
from .media import DecodeResult, FilteredSource, ImageSurface, SpriteHandle, VideoFrame
from .model import US_PER_SEC, Material, MaterialMetadata, new_id

log = logging.getLogger(__name__)

EXPORT_SAMPLE_RATE = 48000
EXPORT_AUDIO_CHANNELS = 2
EXPORT_AUDIO_BITRATE = "128k"
AUDIO_CODECS = {"mp4": "aac", "webm": "libopus"}


class FFmpegNotFound(UnsupportedEnvironment):
    """Raised when ffmpeg/ffprobe cannot be located."""
    pass


class FFmpegError(RuntimeError):
    def __init__(self, cmd: List[str], returncode: int, stderr: str = "") -> None:
        self.cmd = list(cmd)
        self.returncode = int(returncode)
        self.stderr = stderr
        tail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        super().__init__(f"ffmpeg exited with {returncode}" + (f": {tail}" if tail else ""))


def _which(name: str, local_bin: Optional[Path]) -> Optional[str]:
    if local_bin is not None:
        local = local_bin / name
        if local.exists():
            return str(local)
    return shutil.which(name)


def resolve_ffmpeg_bins(search_dir: Optional[Path] = None) -> Tuple[str, str]:
    """Return (ffmpeg_path, ffprobe_path). Prefer `search_dir`, fallback to PATH."""
    if os.name == "nt":
        ffmpeg = _which("ffmpeg.exe", search_dir) or _which("ffmpeg", search_dir)
        ffprobe = _which("ffprobe.exe", search_dir) or _which("ffprobe", search_dir)
    else:
        ffmpeg = _which("ffmpeg", search_dir)
        ffprobe = _which("ffprobe", search_dir)

    if not ffmpeg or not ffprobe:
        where = f"{search_dir} or PATH" if search_dir is not None else "PATH"
        raise FFmpegNotFound(f"ffmpeg/ffprobe not found in {where}; video decode/encode is unavailable")
    return ffmpeg, ffprobe


def _safe_int(v: Any, default: int = 0) -> int:
    try:
        return int(float(v))
    except Exception:
        return default


def parse_probe_output(data: Dict[str, Any]) -> MaterialMetadata:
    fmt = data.get("format", {}) or {}
    dur_sec = float(fmt.get("duration", 0.0) or 0.0)

    streams = data.get("streams", []) or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

    return MaterialMetadata(
        duration=int(round(dur_sec * US_PER_SEC)),
        width=_safe_int(video.get("width")) if video else 0,
        height=_safe_int(video.get("height")) if video else 0,
        size=_safe_int(fmt.get("size")),
        # Sources without audio info fall back to common defaults.
        audio_sample_rate=_safe_int(audio.get("sample_rate"), 48000) if audio else 48000,
        audio_channels=_safe_int(audio.get("channels"), 2) if audio else 2,
        has_video=video is not None,
        has_audio=audio is not None,
    )


def probe_media(ffprobe_path: str, src: str) -> MaterialMetadata:
    """Use ffprobe to get duration, dimensions and audio layout."""
    cmd = [
        ffprobe_path,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        src,
    ]
    p = subprocess.run(cmd, capture_output=True, text=True, check=True)
    return parse_probe_output(json.loads(p.stdout))


async def _run_capture(cmd: List[str]) -> bytes:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    out, err = await proc.communicate()
    if proc.returncode != 0:
        raise FFmpegError(cmd, proc.returncode, err.decode("utf-8", errors="replace"))
    return out


class FFmpegSource:
    """
    Decode handle over one media file.

    Each decode_at call runs ffmpeg for a single RGB frame plus the PCM
    between the previous decode and this one, so consecutive ticks return
    contiguous audio whose length matches the elapsed source time. A backward
    jump or a gap wider than `max_audio_gap` restarts the audio cursor and that
    decode returns no audio. clone() returns an independent instance with its
    own cursor.
    """

    def __init__(
        self,
        ffmpeg_path: str,
        path: str,
        meta: MaterialMetadata,
        max_audio_gap: int = US_PER_SEC // 2,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.path = str(path)
        self.meta = meta
        self.max_audio_gap = max(1, int(max_audio_gap))
        self._audio_cursor: Optional[int] = None

    def __repr__(self) -> str:
        return f"FFmpegSource({Path(self.path).name!r})"

    async def ready(self) -> None:
        if self.meta.duration <= 0:
            raise ValueError(f"Media has no duration: {self.path}")

    async def clone(self) -> "FFmpegSource":
        return FFmpegSource(self.ffmpeg_path, self.path, self.meta, self.max_audio_gap)

    def frame_command(self, time: int) -> List[str]:
        return [
            self.ffmpeg_path,
            "-v",
            "error",
            "-ss",
            f"{time / US_PER_SEC:.6f}",
            "-i",
            self.path,
            "-frames:v",
            "1",
            "-f",
            "rawvideo",
            "-pix_fmt",
            "rgb24",
            "pipe:1",
        ]

    def audio_command(
        self,
        start: int,
        length: int,
        channels: Optional[int] = None,
        sample_rate: Optional[int] = None,
    ) -> List[str]:
        return [
            self.ffmpeg_path,
            "-v",
            "error",
            "-ss",
            f"{start / US_PER_SEC:.6f}",
            "-t",
            f"{length / US_PER_SEC:.6f}",
            "-i",
            self.path,
            "-vn",
            "-f",
            "f32le",
            "-acodec",
            "pcm_f32le",
            "-ac",
            str(channels or self.meta.audio_channels),
            "-ar",
            str(sample_rate or self.meta.audio_sample_rate),
            "pipe:1",
        ]

    def _audio_span(self, t: int) -> Tuple[int, int]:
        """(start, length) of the audio owed for a decode at `t`; advances the cursor."""
        prev = self._audio_cursor
        self._audio_cursor = t
        if prev is None or t <= prev or t - prev > self.max_audio_gap:
            return t, 0
        return prev, t - prev

    async def decode_at(self, time: int) -> DecodeResult:
        t = max(0, int(time))
        if t >= self.meta.duration:
            self._audio_cursor = None
            return DecodeResult(status="done")
        video = await self._decode_video(t) if self.meta.has_video else None
        audio = None
        if self.meta.has_audio:
            start, length = self._audio_span(t)
            if length > 0:
                audio = await self._decode_audio(start, length)
        return DecodeResult(video=video, audio=audio)

    async def _decode_video(self, t: int) -> Optional[VideoFrame]:
        w, h = int(self.meta.width), int(self.meta.height)
        if w <= 0 or h <= 0:
            return None
        raw = await _run_capture(self.frame_command(t))
        expected = w * h * 3
        if len(raw) < expected:
            # Seeking past the last decodable frame yields no picture.
            return None
        img = Image.frombytes("RGB", (w, h), raw[:expected])
        return VideoFrame(img, timestamp=t)

    async def read_pcm(self, start: int, length: int, channels: int, sample_rate: int) -> np.ndarray:
        """Decode `length` us of audio from `start` as a (frames, channels) float32 array."""
        channels = max(1, int(channels))
        if length <= 0:
            return np.zeros((0, channels), dtype=np.float32)
        raw = await _run_capture(self.audio_command(start, length, channels, sample_rate))
        samples = np.frombuffer(raw, dtype="<f4")
        frames = samples.size // channels
        return samples[: frames * channels].reshape(frames, channels)

    async def _decode_audio(self, start: int, length: int) -> Optional[List[np.ndarray]]:
        pcm = await self.read_pcm(start, length, self.meta.audio_channels, self.meta.audio_sample_rate)
        if pcm.shape[0] == 0:
            return None
        return [np.ascontiguousarray(pcm[:, c]) for c in range(pcm.shape[1])]


def load_material(ffmpeg_path: str, ffprobe_path: str, src: str) -> Material:
    """Probe a file and wrap it as a Material with an FFmpegSource handle."""
    meta = probe_media(ffprobe_path, src)
    if meta.duration <= 0:
        raise ValueError(f"Media has no duration: {Path(src).name}")
    return Material(id=new_id(), name=Path(src).name, source=FFmpegSource(ffmpeg_path, src, meta), metadata=meta)


def cumulative_counts(durations: List[int], per_second: float) -> List[int]:
    """
    Split a run of back-to-back durations into whole units (frames, samples).

    Boundaries are rounded on the cumulative timeline, so the total matches
    the summed duration instead of growing by one rounding step per segment.
    """
    counts: List[int] = []
    start = 0
    for d in durations:
        end = start + int(d)
        first = int(round(start * per_second / US_PER_SEC))
        last = int(round(end * per_second / US_PER_SEC))
        counts.append(last - first)
        start = end
    return counts


def _audio_source(handle: SpriteHandle) -> Optional[FFmpegSource]:
    source = handle.source
    while isinstance(source, FilteredSource):
        source = source.source
    if isinstance(source, FFmpegSource) and source.meta.has_audio:
        return source
    return None


class FFmpegCompositor:
    """
    Export compositor encoding registered handles with an ffmpeg process.

    Frames are produced sequentially, handle by handle in registration order,
    and written as raw RGB to the encoder's stdin while output_stream() yields
    encoder stdout chunks. When any handle carries audio, the soundtrack is
    rendered to a temporary f32le file first and muxed as a second input.
    """

    def __init__(
        self,
        ffmpeg_path: str,
        video_codec: str = "libx264",
        container: str = "mp4",
        chunk_size: int = 64 * 1024,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.video_codec = video_codec
        self.container = container if container in AUDIO_CODECS else "mp4"
        self.chunk_size = max(1024, int(chunk_size))
        self.width = 0
        self.height = 0
        self.fps = 30
        self.bitrate = 5_000_000
        self.handles: List[SpriteHandle] = []
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._audio_path: Optional[str] = None

    def configure(self, width: int, height: int, fps: int, bitrate: int) -> None:
        if width <= 0 or height <= 0:
            raise ValueError(f"invalid output size {width}x{height}")
        self.width = int(width)
        self.height = int(height)
        self.fps = max(1, int(fps))
        self.bitrate = max(1, int(bitrate))

    async def register(self, handle: SpriteHandle, position: int) -> None:
        if position != len(self.handles):
            raise ValueError(f"sprite registered out of order: position {position}, expected {len(self.handles)}")
        self.handles.append(handle)

    def build_encode_command(self, audio_path: Optional[str] = None) -> List[str]:
        if not self.width or not self.height:
            raise ValueError("compositor is not configured")
        args: List[str] = [
            self.ffmpeg_path,
            "-v",
            "error",
            "-nostats",
            "-y",
            "-f",
            "rawvideo",
            "-pix_fmt",
            "rgb24",
            "-s",
            f"{self.width}x{self.height}",
            "-r",
            str(self.fps),
            "-i",
            "pipe:0",
        ]
        if audio_path:
            args += [
                "-f",
                "f32le",
                "-ar",
                str(EXPORT_SAMPLE_RATE),
                "-ac",
                str(EXPORT_AUDIO_CHANNELS),
                "-i",
                audio_path,
                "-map",
                "0:v:0",
                "-map",
                "1:a:0",
                "-c:a",
                AUDIO_CODECS[self.container],
                "-b:a",
                EXPORT_AUDIO_BITRATE,
            ]
        else:
            args.append("-an")
        args += [
            "-c:v",
            self.video_codec,
            "-b:v",
            str(self.bitrate),
            "-pix_fmt",
            "yuv420p",
        ]
        if self.container == "mp4":
            # Fragmented MP4 can be written to a non-seekable pipe.
            args += ["-movflags", "frag_keyframe+empty_moov", "-f", "mp4"]
        else:
            args += ["-f", "webm"]
        args.append("pipe:1")
        return args

    def frame_counts(self) -> List[int]:
        counts = cumulative_counts([h.duration for h in self.handles], self.fps)
        if counts and sum(counts) == 0:
            counts[-1] = 1
        return counts

    async def render_frames(self, handle: SpriteHandle, count: int) -> AsyncIterator[bytes]:
        """Yield `count` raw RGB frames for one handle, holding the last picture on gaps."""
        surface = ImageSurface(self.width, self.height)
        frame_us = US_PER_SEC / float(self.fps)
        for i in range(count):
            result = await handle.tick(int(round(i * frame_us)))
            try:
                if result.video is not None:
                    surface.clear()
                    surface.draw_frame(result.video, handle.opacity)
            finally:
                result.release()
            yield surface.to_bytes()

    def has_audio(self) -> bool:
        return any(_audio_source(h) is not None for h in self.handles)

    async def render_audio_track(self) -> Optional[np.ndarray]:
        """
        Decode every handle's audio window into one (frames, channels) track.

        Each segment is resampled to exactly its share of the output timeline,
        which also applies the handle's playback rate. Handles without audio
        contribute silence. Returns None when no handle has audio.
        """
        if not self.has_audio():
            return None
        counts = cumulative_counts([h.duration for h in self.handles], EXPORT_SAMPLE_RATE)
        parts: List[np.ndarray] = []
        for handle, count in zip(self.handles, counts):
            source = _audio_source(handle)
            if source is None:
                parts.append(np.zeros((count, EXPORT_AUDIO_CHANNELS), dtype=np.float32))
                continue
            window = int(round(handle.duration * handle.playback_rate))
            pcm = await source.read_pcm(handle.offset, window, EXPORT_AUDIO_CHANNELS, EXPORT_SAMPLE_RATE)
            log.debug("audio for %r: %d frames -> %d", handle, pcm.shape[0], count)
            parts.append(resample(pcm, count))
        return np.concatenate(parts, axis=0)

    def _write_audio_track(self, track: np.ndarray) -> str:
        fd, path = tempfile.mkstemp(prefix="autocut-", suffix=".f32le")
        with os.fdopen(fd, "wb") as f:
            f.write(track.astype("<f4").tobytes())
        return path

    async def _feed(self, proc: asyncio.subprocess.Process) -> None:
        stdin = proc.stdin
        if stdin is None:
            raise RuntimeError("encoder stdin is not a pipe")
        try:
            for position, (handle, count) in enumerate(zip(self.handles, self.frame_counts())):
                log.debug("encoding handle %d: %r (%d frames)", position, handle, count)
                async for raw in self.render_frames(handle, count):
                    stdin.write(raw)
                    await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The encoder exited early; its exit status carries the reason.
            log.debug("encoder closed stdin early")
        finally:
            stdin.close()

    async def output_stream(self) -> AsyncGenerator[bytes, None]:
        if not self.handles:
            raise ValueError("no sprites registered")
        feeder: Optional[asyncio.Future] = None
        try:
            track = await self.render_audio_track()
            if track is not None:
                self._audio_path = self._write_audio_track(track)
            cmd = self.build_encode_command(self._audio_path)
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            self._proc = proc
            stdout, stderr = proc.stdout, proc.stderr
            if stdout is None or stderr is None:
                raise RuntimeError("encoder output is not a pipe")
            feeder = asyncio.ensure_future(self._feed(proc))
            while True:
                chunk = await stdout.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk
            await feeder
            err = await stderr.read()
            rc = await proc.wait()
            if rc != 0:
                raise FFmpegError(cmd, rc, err.decode("utf-8", errors="replace"))
        finally:
            if feeder is not None and not feeder.done():
                feeder.cancel()
            await self.close()

    async def close(self) -> None:
        proc, self._proc = self._proc, None
        if proc is not None and proc.returncode is None:
            proc.kill()
            await proc.wait()
        audio_path, self._audio_path = self._audio_path, None
        if audio_path:
            Path(audio_path).unlink(missing_ok=True)
