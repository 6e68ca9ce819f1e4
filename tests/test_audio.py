import unittest

import numpy as np

from fakes import FakeAudioSink, FakeClock

from autocut.audio import AudioScheduler, SpeakerSink, resample, to_frames


class TestAudioScheduler(unittest.TestCase):
    def test_buffers_never_overlap(self):
        clock = FakeClock(0.0)
        sink = FakeAudioSink(clock)
        sched = AudioScheduler(sink)

        starts = []
        # Buffers delivered faster than real time queue up back to back.
        for _ in range(5):
            b = sched.schedule([[0.0] * 480, [0.0] * 480], 48000)
            starts.append((b.start, b.duration))
            clock.advance(0.001)

        for (s0, d0), (s1, _d1) in zip(starts, starts[1:]):
            self.assertGreaterEqual(s1, s0 + d0)
        self.assertAlmostEqual(starts[0][1], 0.01)
        self.assertEqual(len(sink.played), 5)

    def test_late_buffer_starts_now(self):
        clock = FakeClock(0.0)
        sched = AudioScheduler(FakeAudioSink(clock))
        first = sched.schedule([[0.0] * 480], 48000)
        clock.advance(1.0)
        second = sched.schedule([[0.0] * 480], 48000)
        self.assertEqual(first.start, 0.0)
        self.assertEqual(second.start, 1.0)
        self.assertAlmostEqual(sched.next_time, 1.01)

    def test_reset_moves_cursor_to_now_and_flushes(self):
        clock = FakeClock(0.0)
        sink = FakeAudioSink(clock)
        sched = AudioScheduler(sink)
        for _ in range(10):
            sched.schedule([[0.0] * 4800], 48000)
        self.assertAlmostEqual(sched.next_time, 1.0)
        self.assertAlmostEqual(sched.lead, 1.0)
        clock.advance(0.2)
        sched.reset()
        self.assertEqual(sched.next_time, 0.2)
        self.assertEqual(sched.lead, 0.0)
        self.assertEqual(sink.flushes, 1)

    def test_invalid_input(self):
        sched = AudioScheduler(FakeAudioSink())
        self.assertIsNone(sched.schedule([], 48000))
        self.assertIsNone(sched.schedule([[], []], 48000))
        with self.assertRaises(ValueError):
            sched.schedule([[0.0] * 10, [0.0] * 9], 48000)
        with self.assertRaises(ValueError):
            sched.schedule([[0.0] * 10], 0)


class TestSampleHelpers(unittest.TestCase):
    def test_to_frames_maps_channels(self):
        mono = to_frames([[0.1, 0.2, 0.3]], 2)
        self.assertEqual(mono.shape, (3, 2))
        np.testing.assert_allclose(mono[:, 0], mono[:, 1])

        surround = to_frames([[1.0], [2.0], [3.0]], 2)
        np.testing.assert_allclose(surround, [[1.0, 2.0]])

    def test_resample_hits_exact_length(self):
        src = np.linspace(0.0, 1.0, 100, dtype=np.float32).reshape(100, 1)
        out = resample(src, 150)
        self.assertEqual(out.shape, (150, 1))
        self.assertAlmostEqual(float(out[0, 0]), 0.0)
        self.assertAlmostEqual(float(out[-1, 0]), 1.0, places=5)
        self.assertEqual(resample(np.zeros((0, 2), dtype=np.float32), 4).shape, (4, 2))
        self.assertEqual(resample(src, 0).shape, (0, 1))


class _FakeStream:
    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.started = False
        self.stopped = False
        self.closed = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def close(self) -> None:
        self.closed = True


class TestSpeakerSink(unittest.TestCase):
    def setUp(self):
        self.streams = []

        def factory(**kwargs):
            s = _FakeStream(**kwargs)
            self.streams.append(s)
            return s

        self.sink = SpeakerSink(sample_rate=1000, channels=2, blocksize=4, stream_factory=factory)

    def _render(self, frames: int) -> np.ndarray:
        out = np.full((frames, 2), 9.0, dtype=np.float32)
        self.sink._callback(out, frames, None, None)
        return out

    def test_stream_opens_on_first_buffer(self):
        self.assertEqual(self.streams, [])
        self.sink.play([[0.5] * 4, [0.25] * 4], 1000, 0.0)
        self.assertEqual(len(self.streams), 1)
        stream = self.streams[0]
        self.assertTrue(stream.started)
        self.assertEqual(stream.kwargs["samplerate"], 1000)
        self.assertEqual(stream.kwargs["channels"], 2)
        self.assertEqual(stream.kwargs["callback"], self.sink._callback)

        self.sink.play([[0.5] * 4], 1000, 0.004)
        self.assertEqual(len(self.streams), 1)

    def test_buffers_play_at_their_scheduled_frame(self):
        self.sink.play([[0.5] * 3, [0.25] * 3], 1000, 0.002)
        first = self._render(4)
        np.testing.assert_allclose(first[:, 0], [0.0, 0.0, 0.5, 0.5])
        np.testing.assert_allclose(first[:, 1], [0.0, 0.0, 0.25, 0.25])
        second = self._render(4)
        np.testing.assert_allclose(second[:, 0], [0.5, 0.0, 0.0, 0.0])
        self.assertAlmostEqual(self.sink.current_time, 0.008)

    def test_clock_follows_rendered_frames(self):
        self.assertEqual(self.sink.current_time, 0.0)
        self._render(4)
        self._render(4)
        self.assertAlmostEqual(self.sink.current_time, 0.008)

    def test_other_sample_rates_are_resampled(self):
        self.sink.play([[0.5] * 8, [0.5] * 8], 2000, 0.0)
        out = self._render(8)
        np.testing.assert_allclose(out[:4, 0], [0.5] * 4)
        np.testing.assert_allclose(out[4:, 0], [0.0] * 4)

    def test_flush_and_close(self):
        self.sink.play([[0.5] * 4, [0.5] * 4], 1000, 0.0)
        self.sink.flush()
        np.testing.assert_allclose(self._render(4), np.zeros((4, 2)))
        self.sink.close()
        self.assertTrue(self.streams[0].stopped)
        self.assertTrue(self.streams[0].closed)
        self.sink.close()


if __name__ == "__main__":
    unittest.main()
