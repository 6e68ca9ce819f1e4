import unittest

from fakes import FakeCompositor, make_material

from autocut.errors import DecodeFailure, EmptyTimeline, EncodeFailure, ExportCancelled
from autocut.export import (
    ProgressReporter,
    build_export_handle,
    export_timeline,
    sprite_phase_progress,
    stream_phase_progress,
)
from autocut.media import EXPORT, FilteredSource
from autocut.model import ExportSettings, FilterSettings
from autocut.timeline import Timeline


def _two_sprite_timeline() -> Timeline:
    tl = Timeline()
    tl.append(make_material(3_000_000, width=1280, height=720, name="a.mp4"))
    tl.append(make_material(2_000_000, width=640, height=360, name="b.mp4"))
    return tl


class TestProgress(unittest.TestCase):
    def test_phases(self):
        self.assertEqual(sprite_phase_progress(1, 2), 25.0)
        self.assertEqual(sprite_phase_progress(2, 2), 50.0)
        self.assertEqual(stream_phase_progress(0), 50.0)
        self.assertAlmostEqual(stream_phase_progress(50), 74.5)
        self.assertEqual(stream_phase_progress(100), 99.0)
        self.assertEqual(stream_phase_progress(10_000), 99.0)

    def test_reporter_is_monotonic_and_capped(self):
        seen = []
        r = ProgressReporter(seen.append)
        r.report(30)
        r.report(10)
        r.report(150)
        r.report(100, final=True)
        self.assertEqual(seen, [30.0, 30.0, 99.0, 100.0])


class TestBuildExportHandle(unittest.IsolatedAsyncioTestCase):
    async def test_unfiltered_sprite_gets_new_handle_on_shared_source(self):
        tl = _two_sprite_timeline()
        s = tl.sprites[1]
        h = await build_export_handle(s)
        self.assertIsNot(h, s.handle)
        self.assertEqual(h.role, EXPORT)
        self.assertIs(h.source, s.material.source)
        self.assertEqual((h.offset, h.duration, h.opacity), (s.source_offset, s.duration, s.opacity))
        self.assertEqual(s.material.source.clones, [])

    async def test_filtered_sprite_clones_and_wraps(self):
        tl = Timeline()
        s = tl.append(make_material(4_000_000))
        _first, second = tl.split(s.id, 1_000_000)
        second = tl.set_filters(second.id, FilterSettings(sepia=True))
        h = await build_export_handle(second)
        self.assertIsInstance(h.source, FilteredSource)
        self.assertIsNot(h.source.source, s.material.source)
        self.assertIs(h.source.source.clone_of, s.material.source)
        self.assertEqual(h.offset, 1_000_000)
        self.assertEqual(h.duration, 3_000_000)

    async def test_clone_failure_is_decode_failure(self):
        tl = Timeline()
        s = tl.append(make_material(1_000_000))
        s = tl.set_filters(s.id, FilterSettings(blur=2))
        s.material.source.fail_clone = OSError("cannot reopen")
        with self.assertRaises(DecodeFailure):
            await build_export_handle(s)


class TestExportTimeline(unittest.IsolatedAsyncioTestCase):
    async def test_empty_timeline(self):
        comp = FakeCompositor()
        with self.assertRaises(EmptyTimeline):
            await export_timeline([], ExportSettings(), lambda: comp)
        self.assertIsNone(comp.configured)

    async def test_two_sprites_filter_on_first_only(self):
        tl = _two_sprite_timeline()
        first = tl.set_filters(tl.sprites[0].id, FilterSettings(grayscale=True))
        second = tl.sprites[1]
        comp = FakeCompositor([b"one", b"two", b"three"])

        result = await export_timeline(tl.sprites, ExportSettings(), lambda: comp)

        self.assertEqual([pos for _h, pos in comp.registered], [0, 1])
        h0, h1 = comp.registered[0][0], comp.registered[1][0]
        self.assertIsNot(h0, h1)
        self.assertIsNot(h0, first.handle)
        self.assertIsNot(h1, second.handle)
        self.assertIsInstance(h0.source, FilteredSource)
        self.assertNotIsInstance(h1.source, FilteredSource)
        self.assertEqual(h0.duration, 3_000_000)
        self.assertEqual(h1.duration, 2_000_000)

        self.assertEqual(result.data, b"onetwothree")
        self.assertEqual(result.chunk_count, 3)
        self.assertEqual(result.duration, 5_000_000)
        self.assertEqual((result.width, result.height), (1280, 720))
        self.assertEqual(comp.configured, (1280, 720, 30, 5_000_000))
        self.assertTrue(comp.closed)

    async def test_progress_is_monotonic_and_ends_at_100(self):
        tl = _two_sprite_timeline()
        seen = []
        await export_timeline(tl.sprites, ExportSettings(fps=24), lambda: FakeCompositor([b"x"] * 150), on_progress=seen.append)
        self.assertEqual(seen[:2], [25.0, 50.0])
        self.assertEqual(seen, sorted(seen))
        self.assertEqual(seen[-1], 100.0)
        self.assertTrue(all(p <= 99.0 for p in seen[:-1]))

    async def test_explicit_size(self):
        tl = _two_sprite_timeline()
        comp = FakeCompositor()
        result = await export_timeline(tl.sprites, ExportSettings(width=321, height=241), lambda: comp)
        self.assertEqual((result.width, result.height), (320, 240))

    async def test_timeline_untouched(self):
        tl = _two_sprite_timeline()
        tl.set_filters(tl.sprites[1].id, FilterSettings(contrast=1.5))
        before = tl.sprites
        await export_timeline(tl.sprites, ExportSettings(), FakeCompositor)
        self.assertEqual(tl.sprites, before)
        self.assertTrue(all(a.handle is b.handle for a, b in zip(tl.sprites, before)))

    async def test_configure_failure(self):
        tl = _two_sprite_timeline()
        comp = FakeCompositor()
        comp.fail_configure = ValueError("bad size")
        with self.assertRaises(EncodeFailure):
            await export_timeline(tl.sprites, ExportSettings(), lambda: comp)
        self.assertTrue(comp.closed)

    async def test_register_failure(self):
        tl = _two_sprite_timeline()
        comp = FakeCompositor()
        comp.fail_register_at = 1
        with self.assertRaises(EncodeFailure):
            await export_timeline(tl.sprites, ExportSettings(), lambda: comp)
        self.assertEqual(len(comp.registered), 1)
        self.assertTrue(comp.closed)

    async def test_stream_failure_discards_output(self):
        tl = _two_sprite_timeline()
        comp = FakeCompositor([b"a", b"b", b"c"])
        comp.fail_stream_after = 2
        seen = []
        with self.assertRaises(EncodeFailure) as ctx:
            await export_timeline(tl.sprites, ExportSettings(), lambda: comp, on_progress=seen.append)
        self.assertIn("encoder crashed", str(ctx.exception))
        self.assertNotIn(100.0, seen)
        self.assertTrue(comp.closed)

    async def test_cancel_during_stream(self):
        tl = _two_sprite_timeline()
        comp = FakeCompositor([b"a", b"b", b"c"])
        seen = []
        with self.assertRaises(ExportCancelled):
            await export_timeline(
                tl.sprites,
                ExportSettings(),
                lambda: comp,
                on_progress=seen.append,
                should_cancel=lambda: len(seen) >= 3,
            )
        self.assertTrue(comp.closed)
        self.assertNotIn(100.0, seen)

    async def test_cancel_finalizes_output_stream_before_returning(self):
        tl = _two_sprite_timeline()
        comp = FakeCompositor([b"a", b"b", b"c", b"d"])
        chunks = []
        with self.assertRaises(ExportCancelled):
            await export_timeline(
                tl.sprites,
                ExportSettings(),
                lambda: comp,
                on_progress=chunks.append,
                should_cancel=lambda: len(chunks) >= 3,
            )
        # The stream's cleanup ran synchronously, not from a later finalizer.
        self.assertTrue(comp.stream_closed)

    async def test_completed_export_finalizes_output_stream(self):
        tl = _two_sprite_timeline()
        comp = FakeCompositor()
        await export_timeline(tl.sprites, ExportSettings(), lambda: comp)
        self.assertTrue(comp.stream_closed)

    async def test_cancel_before_registration(self):
        tl = _two_sprite_timeline()
        comp = FakeCompositor()
        with self.assertRaises(ExportCancelled):
            await export_timeline(tl.sprites, ExportSettings(), lambda: comp, should_cancel=lambda: True)
        self.assertEqual(comp.registered, [])


if __name__ == "__main__":
    unittest.main()
