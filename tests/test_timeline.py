import random
import unittest
from dataclasses import replace

from fakes import make_material

from autocut.errors import EmptyTimeline, InvalidSplitPoint, SpriteNotFound
from autocut.model import FilterSettings
from autocut.timeline import (
    Timeline,
    active_sprite_at,
    append_sprite,
    check_contiguity,
    delete_sprite,
    source_time_at,
    split_sprite,
    total_duration,
    update_sprite,
)


def _assert_contiguous(tc: unittest.TestCase, sprites) -> None:
    if sprites:
        tc.assertEqual(sprites[0].start_time, 0)
    for a, b in zip(sprites, sprites[1:]):
        tc.assertEqual(b.start_time, a.start_time + a.duration)


class TestTimeline(unittest.TestCase):
    def test_append_single_material(self):
        tl = Timeline()
        s = tl.append(make_material(10_000_000))
        self.assertEqual(tl.total_duration(), 10_000_000)
        self.assertEqual(s.start_time, 0)
        self.assertEqual(s.source_offset, 0)
        self.assertEqual(s.duration, 10_000_000)

    def test_append_second_material_keeps_zero_offset(self):
        tl = Timeline()
        tl.append(make_material(5_000_000))
        second = tl.append(make_material(3_000_000))
        self.assertEqual(second.start_time, 5_000_000)
        self.assertEqual(second.source_offset, 0)
        self.assertEqual(tl.total_duration(), 8_000_000)

    def test_split_at_four_seconds(self):
        tl = Timeline()
        s = tl.append(make_material(10_000_000))
        first, second = tl.split(s.id, 4_000_000)
        self.assertEqual(first.duration, 4_000_000)
        self.assertEqual(second.duration, 6_000_000)
        self.assertEqual(first.source_offset, 0)
        self.assertEqual(second.source_offset, 4_000_000)
        self.assertEqual(second.start_time, 4_000_000)
        self.assertEqual([x.id for x in tl], [first.id, second.id])

    def test_split_second_half_offset_is_relative_to_sprite_start(self):
        tl = Timeline()
        tl.append(make_material(5_000_000))
        b = tl.append(make_material(8_000_000))
        _first, second = tl.split(b.id, 7_000_000)
        # 2 s into b, not 7 s (the timeline-absolute split time).
        self.assertEqual(second.source_offset, 2_000_000)
        self.assertNotEqual(second.source_offset, 7_000_000)

    def test_split_of_split_accumulates_offset(self):
        tl = Timeline()
        s = tl.append(make_material(10_000_000))
        _a, b = tl.split(s.id, 2_000_000)
        _c, d = tl.split(b.id, 5_000_000)
        self.assertEqual(d.source_offset, 5_000_000)
        self.assertEqual(d.duration, 5_000_000)

    def test_split_creates_fresh_handles_bound_to_same_material(self):
        tl = Timeline()
        s = tl.append(make_material(10_000_000))
        first, second = tl.split(s.id, 1_000_000)
        handles = {id(s.handle), id(first.handle), id(second.handle)}
        self.assertEqual(len(handles), 3)
        self.assertIs(first.handle.source, s.material.source)
        self.assertIs(second.handle.source, s.material.source)
        self.assertIs(first.material, s.material)

    def test_split_inherits_filters_opacity_rate(self):
        tl = Timeline()
        s = tl.append(make_material(10_000_000))
        tl.set_filters(s.id, FilterSettings(sepia=True))
        tl.set_opacity(s.id, 0.5)
        tl.set_playback_rate(s.id, 2.0)
        first, second = tl.split(s.id, 3_000_000)
        for half in (first, second):
            self.assertTrue(half.filters.sepia)
            self.assertEqual(half.opacity, 0.5)
            self.assertEqual(half.playback_rate, 2.0)

    def test_split_at_bounds_is_rejected_without_mutation(self):
        tl = Timeline()
        tl.append(make_material(3_000_000))
        s = tl.append(make_material(4_000_000))
        before = tl.sprites
        for t in (s.start_time, s.end_time, 0, 100_000_000):
            with self.assertRaises(InvalidSplitPoint) as ctx:
                tl.split(s.id, t)
            self.assertEqual(ctx.exception.sprite_id, s.id)
            self.assertEqual(tl.sprites, before)
            self.assertTrue(all(a is b for a, b in zip(tl.sprites, before)))

    def test_invalid_split_is_a_value_error(self):
        tl = Timeline()
        s = tl.append(make_material(1_000_000))
        with self.assertRaises(ValueError):
            tl.split(s.id, 1_000_000)

    def test_delete_middle_shifts_start_not_offset(self):
        tl = Timeline()
        tl.append(make_material(3_000_000))
        b = tl.append(make_material(2_000_000))
        c = tl.append(make_material(4_000_000))
        self.assertEqual(c.start_time, 5_000_000)

        tl.delete(b.id)
        remaining = tl.sprites
        self.assertEqual(len(remaining), 2)
        self.assertEqual(remaining[1].id, c.id)
        self.assertEqual(remaining[1].start_time, 3_000_000)
        self.assertEqual(remaining[1].source_offset, c.source_offset)
        self.assertEqual(tl.total_duration(), 7_000_000)

    def test_delete_preserves_offsets_of_split_pieces(self):
        tl = Timeline()
        s = tl.append(make_material(10_000_000))
        first, second = tl.split(s.id, 4_000_000)
        _x, y = tl.split(second.id, 7_000_000)
        offsets = {sp.id: sp.source_offset for sp in tl}
        tl.delete(first.id)
        for sp in tl:
            self.assertEqual(sp.source_offset, offsets[sp.id])
        _assert_contiguous(self, tl.sprites)
        self.assertEqual(tl.get(y.id).start_time, 2_000_000)

    def test_delete_first_and_only(self):
        tl = Timeline()
        fired = []
        tl.on_empty(lambda: fired.append(True))
        a = tl.append(make_material(1_000_000))
        b = tl.append(make_material(2_000_000))
        tl.delete(a.id)
        self.assertEqual(tl.get(b.id).start_time, 0)
        self.assertEqual(fired, [])
        tl.delete(b.id)
        self.assertTrue(tl.is_empty())
        self.assertEqual(tl.total_duration(), 0)
        self.assertEqual(fired, [True])

    def test_unknown_sprite_raises(self):
        tl = Timeline()
        tl.append(make_material(1_000_000))
        before = tl.sprites
        with self.assertRaises(SpriteNotFound):
            tl.delete("nope")
        with self.assertRaises(KeyError):
            tl.split("nope", 10)
        self.assertEqual(tl.sprites, before)

    def test_first_on_empty(self):
        with self.assertRaises(EmptyTimeline):
            Timeline().first()

    def test_active_sprite_half_open(self):
        tl = Timeline()
        a = tl.append(make_material(2_000_000))
        b = tl.append(make_material(2_000_000))
        self.assertIs(tl.active_sprite_at(0), a)
        self.assertIs(tl.active_sprite_at(1_999_999), a)
        self.assertIs(tl.active_sprite_at(2_000_000), b)
        self.assertIsNone(tl.active_sprite_at(4_000_000))
        self.assertIsNone(tl.active_sprite_at(-1))
        self.assertIsNone(active_sprite_at([], 0))

    def test_source_time_uses_offset_and_rate(self):
        tl = Timeline()
        s = tl.append(make_material(10_000_000))
        _first, second = tl.split(s.id, 4_000_000)
        self.assertEqual(source_time_at(second, 5_000_000), 5_000_000)
        fast = tl.set_playback_rate(second.id, 2.0)
        self.assertEqual(source_time_at(fast, 5_000_000), 4_000_000 + 2_000_000)

    def test_update_cannot_touch_timing(self):
        sprites, s = append_sprite([], make_material(1_000_000))
        for field in ("start_time", "duration", "source_offset", "handle"):
            with self.assertRaises(ValueError):
                update_sprite(sprites, s.id, **{field: 5})

    def test_set_values_are_clamped(self):
        tl = Timeline()
        s = tl.append(make_material(1_000_000))
        self.assertEqual(tl.set_playback_rate(s.id, 100).playback_rate, 4.0)
        self.assertEqual(tl.set_playback_rate(s.id, 0).playback_rate, 1.0)
        self.assertEqual(tl.set_opacity(s.id, 2.0).opacity, 1.0)
        self.assertEqual(tl.set_opacity(s.id, -1).opacity, 0.0)

    def test_pure_operations_leave_input_untouched(self):
        sprites, a = append_sprite([], make_material(3_000_000))
        sprites, _b = append_sprite(sprites, make_material(3_000_000))
        frozen = list(sprites)
        split_sprite(sprites, a.id, 1_000_000)
        delete_sprite(sprites, a.id)
        self.assertEqual(sprites, frozen)

    def test_restore_rejects_gaps(self):
        sprites, _a = append_sprite([], make_material(3_000_000))
        sprites, b = append_sprite(sprites, make_material(3_000_000))
        gap = [sprites[0]]
        gap.append(replace(b, start_time=4_000_000))
        with self.assertRaises(ValueError):
            check_contiguity(gap)
        tl = Timeline(sprites)
        with self.assertRaises(ValueError):
            tl.restore(gap)
        self.assertEqual(tl.sprites, tuple(sprites))

    def test_random_edit_sequences_keep_invariants(self):
        rng = random.Random(1234)
        for _round in range(40):
            tl = Timeline()
            for _step in range(30):
                op = rng.choice(["append", "split", "delete"])
                if op == "append" or tl.is_empty():
                    tl.append(make_material(rng.randint(1, 20) * 500_000))
                elif op == "split":
                    s = rng.choice(tl.sprites)
                    t = rng.randint(s.start_time, s.end_time)
                    before_total = tl.total_duration()
                    if s.start_time < t < s.end_time:
                        first, second = tl.split(s.id, t)
                        self.assertEqual(first.duration + second.duration, s.duration)
                        self.assertEqual(second.source_offset, s.source_offset + (t - s.start_time))
                    else:
                        with self.assertRaises(InvalidSplitPoint):
                            tl.split(s.id, t)
                    self.assertEqual(tl.total_duration(), before_total)
                else:
                    s = rng.choice(tl.sprites)
                    offsets = {x.id: x.source_offset for x in tl if x.id != s.id}
                    starts = {x.id: x.start_time for x in tl}
                    tl.delete(s.id)
                    for x in tl:
                        self.assertEqual(x.source_offset, offsets[x.id])
                        expected = starts[x.id] - s.duration if starts[x.id] > s.start_time else starts[x.id]
                        self.assertEqual(x.start_time, expected)
                _assert_contiguous(self, tl.sprites)
                self.assertEqual(tl.total_duration(), sum(x.duration for x in tl))
                self.assertEqual(total_duration(tl.sprites), tl.total_duration())


if __name__ == "__main__":
    unittest.main()
