import unittest

from brawler.clock import LookaheadScheduler, ManualTime
from brawler.events import BAR, BEAT, DROP_WINDOW, PHRASE, EventBus, EventRecorder
from brawler.transport import TransportClock


class TransportTestBase(unittest.TestCase):
    tempo = 120.0  # 0.5 s beats, 2 s bars, 8 s phrases

    def setUp(self):
        self.t = ManualTime(0.0)
        self.sched = LookaheadScheduler(time_source=self.t)
        self.bus = EventBus()
        self.rec = EventRecorder(self.bus)
        self.transport = TransportClock(self.sched, self.bus, tempo=self.tempo)

    def run_to(self, when: float):
        self.t.t = when
        self.sched.pump(when)


class TestTransportCounters(TransportTestBase):
    def test_beat_and_bar_counters(self):
        self.transport.start(at=0.0)
        self.run_to(1.6)
        self.assertEqual(self.transport.current_position()["beat"], 3)
        self.assertEqual(self.transport.current_position()["bar"], 0)
        self.run_to(2.0)
        pos = self.transport.current_position()
        self.assertEqual((pos["bar"], pos["beat"]), (1, 0))

    def test_events_carry_target_times(self):
        self.transport.start(at=0.0)
        self.run_to(2.0)
        self.assertEqual([e.ts for e in self.rec.of_type(BEAT)], [0.5, 1.0, 1.5, 2.0])
        self.assertEqual([e.ts for e in self.rec.of_type(BAR)], [2.0])

    def test_bar_precedes_beat_on_shared_boundary(self):
        self.transport.start(at=0.0)
        self.run_to(4.0)
        at_four = [e.type for e in self.rec.events if e.ts == 4.0]
        self.assertEqual(at_four, [BAR, BEAT])

    def test_phrase_advances_every_four_bars(self):
        self.transport.start(at=0.0)
        self.run_to(16.0)
        self.assertEqual([e.payload["phrase"] for e in self.rec.of_type(PHRASE)], [1, 2])

    def test_bar_counter_wraps(self):
        self.transport.start(at=0.0)
        self.run_to(32.0)  # 16 bars
        self.assertEqual(self.transport.current_bar, 0)

    def test_stop_resets_and_cancels(self):
        self.transport.start(at=0.0)
        self.run_to(3.0)
        self.transport.stop()
        self.assertEqual(self.transport.current_position(), {"bar": 0, "beat": 0, "phrase": 0, "isDropWindow": False})
        n = len(self.rec.events)
        self.run_to(20.0)
        self.assertEqual(len(self.rec.events), n)
        self.assertEqual(self.sched.pending(), 0)

    def test_start_twice_is_noop(self):
        self.transport.start(at=0.0)
        pending = self.sched.pending()
        self.transport.start(at=5.0)
        self.assertEqual(self.sched.pending(), pending)
        self.assertEqual(self.transport.origin, 0.0)

    def test_configure_rejects_invalid(self):
        self.assertFalse(self.transport.configure(0, 4, 4))
        self.assertFalse(self.transport.configure(120, 0, 4))
        self.assertEqual(self.transport.tempo, 120.0)

    def test_configure_while_playing_wraps_beat_into_new_meter(self):
        self.transport.start(at=0.0)
        self.run_to(1.6)
        self.assertEqual(self.transport.current_beat, 3)
        self.assertTrue(self.transport.configure(120, beats_per_bar=3, bars_per_phrase=4))
        self.assertEqual(self.transport.current_beat, 0)
        self.run_to(2.0)
        self.assertEqual(self.transport.current_beat, 1)
        self.run_to(3.0)
        pos = self.transport.current_position()
        self.assertEqual((pos["bar"], pos["beat"]), (1, 0))

    def test_configure_while_playing_wraps_bar_counter(self):
        self.transport.start(at=0.0)
        self.run_to(20.0)
        self.assertEqual(self.transport.current_bar, 10)
        self.transport.configure(120, beats_per_bar=4, bars_per_phrase=2)
        self.assertLess(self.transport.current_bar, self.transport.bar_cycle)
        self.assertEqual(self.transport.current_bar, 2)

    def test_next_grid_time(self):
        self.transport.start(at=0.0)
        self.assertAlmostEqual(self.transport.next_grid_time(0.25, 0.01), 0.125)
        self.assertAlmostEqual(self.transport.next_grid_time(0.25, 0.125), 0.125)
        self.assertAlmostEqual(self.transport.next_grid_time(1.0, 0.6), 1.0)


class TestDropWindow(TransportTestBase):
    def windows(self):
        return [(e.ts, e.payload["open"]) for e in self.rec.of_type(DROP_WINDOW)]

    def test_opens_on_last_beat_of_phrase_and_closes_one_bar_later(self):
        self.transport.start(at=0.0)
        self.run_to(7.4)
        self.assertFalse(self.transport.is_drop_window)
        self.run_to(7.5)
        self.assertTrue(self.transport.is_drop_window)
        self.assertEqual(self.transport.drop_window.window_start, 7.5)
        self.assertEqual(self.transport.drop_window.window_end, 9.5)
        self.run_to(9.49)
        self.assertTrue(self.transport.is_drop_window)
        self.run_to(9.5)
        self.assertFalse(self.transport.is_drop_window)
        self.assertEqual(self.windows(), [(7.5, True), (9.5, False)])

    def test_opens_once_per_phrase(self):
        self.transport.start(at=0.0)
        self.run_to(40.0)  # five phrases, across the bar-counter wrap
        opens = [ts for ts, is_open in self.windows() if is_open]
        self.assertEqual(opens, [7.5, 15.5, 23.5, 31.5, 39.5])

    def test_window_never_open_longer_than_a_bar(self):
        self.transport.start(at=0.0)
        self.run_to(33.0)
        ws = self.windows()
        for (t_open, o), (t_close, c) in zip(ws[::2], ws[1::2]):
            self.assertTrue(o)
            self.assertFalse(c)
            self.assertLessEqual(t_close - t_open, self.transport.bar_seconds + 1e-9)

    def test_reopening_an_open_window_is_noop(self):
        self.transport.start(at=0.0)
        self.run_to(7.5)
        self.transport.open_drop_window(8.0)
        self.assertEqual(self.transport.drop_window.window_start, 7.5)
        self.assertEqual(len(self.windows()), 1)

    def test_stop_closes_open_window(self):
        self.transport.start(at=0.0)
        self.run_to(8.0)
        self.assertTrue(self.transport.is_drop_window)
        self.transport.stop()
        self.assertFalse(self.transport.is_drop_window)
        self.assertEqual(self.windows()[-1][1], False)

    def test_time_to_next_drop_window(self):
        self.assertAlmostEqual(self.transport.time_to_next_drop_window(), 7.5)
        self.transport.start(at=0.0)
        self.assertAlmostEqual(self.transport.time_to_next_drop_window(0.0), 7.5)
        self.run_to(0.7)
        self.assertAlmostEqual(self.transport.time_to_next_drop_window(0.7), 6.8)
        self.run_to(7.6)
        self.assertEqual(self.transport.time_to_next_drop_window(7.6), 0.0)
        self.run_to(9.5)
        self.assertAlmostEqual(self.transport.time_to_next_drop_window(9.5), 6.0)

    def test_short_phrases(self):
        self.transport.configure(120, beats_per_bar=4, bars_per_phrase=1)
        self.transport.start(at=0.0)
        self.run_to(6.0)
        opens = [ts for ts, is_open in self.windows() if is_open]
        self.assertEqual(opens, [1.5, 3.5, 5.5])
