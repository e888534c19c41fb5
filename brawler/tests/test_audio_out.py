import time
import unittest
from unittest import mock

from brawler.audio_out import GainPoint, MidoSink, NullOutput, Voice, open_mido_output
from brawler.clock import ManualTime
from brawler.samples import SampleBuffer


class FakePort:
    def __init__(self, clock=None):
        self.clock = clock
        self.sent = []
        self.sent_at = []

    def send(self, msg):
        self.sent.append(msg)
        if self.clock is not None:
            self.sent_at.append(self.clock())


def _voice(slice_name="SNARE", gain=1.0, start=0.0, voice_id=1):
    return Voice(id=voice_id, pad_id=2, slice_name=slice_name, gain=gain, start=start, end=start + 0.2)


class TestMidoSink(unittest.TestCase):
    def setUp(self):
        self.t = ManualTime(0.0)
        self.port = FakePort(self.t)
        self.sink = MidoSink(self.port, time_source=self.t, run_sender=False)

    def run_to(self, when):
        self.t.t = when
        return self.sink.flush(when)

    def test_note_on_off_on_drum_channel(self):
        buf = SampleBuffer("SNARE", 8820)
        self.sink.start_voice(_voice(gain=0.5), buf)
        self.sink.stop_voice(_voice(), 0.2)
        self.run_to(0.2)
        on, off = self.port.sent
        self.assertEqual((on.type, on.note, on.velocity, on.channel), ("note_on", 38, 64, 9))
        self.assertEqual((off.type, off.note, off.channel), ("note_off", 38, 9))

    def test_note_waits_for_voice_start(self):
        self.sink.start_voice(_voice(start=1.0), SampleBuffer("SNARE", 8820))
        self.assertEqual(self.run_to(0.95), 0)
        self.assertEqual(self.port.sent, [])
        self.assertEqual(self.run_to(1.0), 1)
        self.assertEqual(self.port.sent_at, [1.0])

    def test_notes_go_out_in_start_order(self):
        buf = SampleBuffer("SNARE", 8820)
        self.sink.start_voice(_voice(start=0.5, voice_id=2), buf)
        self.sink.start_voice(_voice(slice_name="KICK", start=0.25, voice_id=3), buf)
        self.run_to(1.0)
        self.assertEqual([m.note for m in self.port.sent], [36, 38])

    def test_cancelled_voice_never_sounds(self):
        voice = _voice(start=0.5)
        self.sink.start_voice(voice, SampleBuffer("SNARE", 8820))
        self.sink.cancel_voice(voice)
        self.run_to(1.0)
        self.assertEqual(self.port.sent, [])
        self.assertEqual(self.sink.pending(), 0)

    def test_unmapped_slice_sends_nothing(self):
        self.sink.start_voice(_voice(slice_name="COWBELL"), SampleBuffer("COWBELL", 1))
        self.run_to(1.0)
        self.assertEqual(self.port.sent, [])

    def test_gain_curve_rides_cc7(self):
        points = [GainPoint(1.0, 1.0), GainPoint(1.01, 0.7, "linear"), GainPoint(1.31, 1.0, "linear")]
        self.sink.gain_automation(points)
        self.run_to(0.99)
        self.assertEqual(self.port.sent, [])
        self.run_to(2.0)
        values = [m.value for m in self.port.sent]
        self.assertTrue(all(m.control == 7 for m in self.port.sent))
        self.assertEqual(len(values), 1 + 4 + 4)
        self.assertEqual(values[0], 127)
        self.assertEqual(values[4], 89)
        self.assertEqual(values[-1], 127)

    def test_cc_writes_wait_for_breakpoint_times(self):
        self.sink.gain_automation([GainPoint(1.0, 1.0), GainPoint(1.5, 0.5)])
        self.run_to(1.2)
        self.run_to(1.6)
        self.assertEqual(self.port.sent_at, [1.2, 1.6])

    def test_new_curve_replaces_pending_writes(self):
        self.sink.gain_automation([GainPoint(1.0, 0.5)])
        self.sink.gain_automation([GainPoint(1.5, 0.25)])
        self.run_to(2.0)
        self.assertEqual([m.value for m in self.port.sent], [32])

    def test_new_curve_keeps_pending_notes(self):
        self.sink.start_voice(_voice(start=1.8, voice_id=7), SampleBuffer("SNARE", 8820))
        self.sink.gain_automation([GainPoint(1.0, 0.5)])
        self.sink.gain_automation([GainPoint(1.5, 0.25)])
        self.run_to(2.0)
        self.assertEqual([m.type for m in self.port.sent], ["control_change", "note_on"])

    def test_panic_clears_queue(self):
        self.sink.start_voice(_voice(start=1.0), SampleBuffer("SNARE", 8820))
        self.sink.panic()
        self.assertEqual([m.control for m in self.port.sent], [120, 123])
        self.run_to(2.0)
        self.assertEqual(len(self.port.sent), 2)

    def test_without_time_source_sends_at_once(self):
        port = FakePort()
        sink = MidoSink(port)
        sink.start_voice(_voice(start=5.0), SampleBuffer("SNARE", 8820))
        self.assertEqual([m.type for m in port.sent], ["note_on"])


class TestMidoSender(unittest.TestCase):
    def test_sender_thread_delivers_due_notes(self):
        t = ManualTime(0.0)
        port = FakePort(t)
        sink = MidoSink(port, time_source=t)
        self.addCleanup(sink.close)
        sink.start_voice(_voice(start=0.5), SampleBuffer("SNARE", 8820))
        time.sleep(0.05)
        self.assertEqual(port.sent, [])
        t.t = 0.5
        deadline = time.monotonic() + 2.0
        while not port.sent and time.monotonic() < deadline:
            time.sleep(0.005)
        self.assertEqual(port.sent_at, [0.5])


class TestOpenOutput(unittest.TestCase):
    def test_no_backend_gives_null_output(self):
        with mock.patch("mido.get_output_names", side_effect=OSError("no backend")):
            out = open_mido_output("Drum")
        self.assertIsInstance(out, NullOutput)

    def test_no_matching_port(self):
        with mock.patch("mido.get_output_names", return_value=["IAC Bus 1"]):
            out = open_mido_output("TR-8S")
        self.assertIsInstance(out, NullOutput)
