import io
import sys
import unittest
from contextlib import redirect_stdout
from decimal import Decimal
from pathlib import Path


# Ensure repo root is on sys.path so we can import `einvoice.*`
_REPO_ROOT = Path(__file__).resolve().parents[2]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


from einvoice.capture import CaptureError, ScanSession, decode_scan_results  # noqa: E402
from einvoice.qr_reconcile import STATUS_NONE, Point, ScanResult  # noqa: E402


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


LEFT_QR = "AB1234567811401031A2b:Milk:2:30"
RIGHT_QR = "**:Egg:1:40"


def _frame(*texts: str):
    return lambda: [ScanResult(data=t) for t in texts]


class TestDecodeScanResults(unittest.TestCase):
    def test_merges_decoders_and_skips_missing_ones(self) -> None:
        def missing(_img):
            raise ImportError("no zbar")

        def broken(_img):
            raise ValueError("bad frame")

        def first(_img):
            return [ScanResult(data=LEFT_QR, corner_points=(Point(0, 0), Point(10, 0)))]

        def second(_img):
            return [ScanResult(data=" " + LEFT_QR), ScanResult(data=RIGHT_QR)]

        with redirect_stdout(io.StringIO()) as out:
            hits = decode_scan_results(object(), decoders=[("missing", missing), ("broken", broken), ("a", first), ("b", second)])

        self.assertEqual([h.data for h in hits], [LEFT_QR, RIGHT_QR])
        # geometry of the first hit is kept
        self.assertEqual(len(hits[0].corner_points), 2)
        self.assertIn("broken decode failed", out.getvalue())

    def test_stops_after_two_payloads(self) -> None:
        calls: list[str] = []

        def two(_img):
            calls.append("two")
            return [ScanResult(data="a"), ScanResult(data="b")]

        def never(_img):
            calls.append("never")
            return []

        decode_scan_results(object(), decoders=[("two", two), ("never", never)])
        self.assertEqual(calls, ["two"])


class TestScanSession(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _FakeClock()
        self.session = ScanSession(cooldown_seconds=0.6, clock=self.clock)
        self.out = io.StringIO()
        self._out = redirect_stdout(self.out)
        self._out.__enter__()

    def tearDown(self) -> None:
        self._out.__exit__(None, None, None)

    def test_complete_pair_in_one_capture(self) -> None:
        pair = self.session.capture(_frame(RIGHT_QR, LEFT_QR))
        self.assertIsNotNone(pair)
        self.assertTrue(self.session.ready)
        self.assertEqual(self.session.left, LEFT_QR)
        self.assertEqual(self.session.right, ":Egg:1:40")

        inv = self.session.to_invoice()
        self.assertEqual([it.name for it in inv.items], ["Milk", "Egg"])
        self.assertEqual(inv.total, Decimal("100"))

    def test_halves_accumulate_across_captures(self) -> None:
        self.session.capture(_frame(LEFT_QR))
        self.assertFalse(self.session.ready)
        self.assertIn("LEFT", self.session.hint())

        self.clock.now += 1.0
        self.session.capture(_frame(RIGHT_QR))
        self.assertTrue(self.session.ready)
        self.assertEqual(self.session.left, LEFT_QR)

    def test_single_half_does_not_overwrite(self) -> None:
        self.session.capture(_frame(LEFT_QR))
        self.clock.now += 1.0
        self.session.capture(_frame("OTHER:1:2"))
        self.assertEqual(self.session.left, LEFT_QR)
        self.assertIn("[WARN] A different LEFT QR was read", self.out.getvalue())

    def test_repeated_right_half_is_quiet_but_mismatch_warns(self) -> None:
        self.session.capture(_frame(RIGHT_QR))
        self.clock.now += 1.0
        self.session.capture(_frame(RIGHT_QR))
        self.assertEqual(self.session.right, ":Egg:1:40")
        self.assertNotIn("different RIGHT", self.out.getvalue())

        self.clock.now += 1.0
        self.session.capture(_frame("**:Tea:1:35"))
        self.assertEqual(self.session.right, ":Egg:1:40")
        self.assertIn("[WARN] A different RIGHT QR was read", self.out.getvalue())

    def test_nothing_detected(self) -> None:
        pair = self.session.capture(_frame())
        self.assertEqual(pair.status, STATUS_NONE)
        self.assertIsNone(self.session.left)
        self.assertIsNone(self.session.right)
        with self.assertRaises(RuntimeError):
            self.session.to_invoice()

    def test_debounce_within_cooldown(self) -> None:
        self.session.capture(_frame(LEFT_QR))
        self.clock.now += 0.3
        self.assertIsNone(self.session.capture(_frame(RIGHT_QR)))
        self.assertIsNone(self.session.right)

        self.clock.now += 0.5
        self.assertIsNotNone(self.session.capture(_frame(RIGHT_QR)))
        self.assertTrue(self.session.ready)

    def test_reentrant_trigger_is_ignored(self) -> None:
        inner: list = []

        def decode():
            inner.append(self.session.capture(_frame(RIGHT_QR)))
            return [ScanResult(data=LEFT_QR)]

        self.session.capture(decode)
        self.assertEqual(inner, [None])
        self.assertIsNone(self.session.right)

    def test_capture_error_propagates_and_releases(self) -> None:
        def fail():
            raise CaptureError("camera unavailable")

        with self.assertRaises(CaptureError):
            self.session.capture(fail)
        self.clock.now += 1.0
        self.assertIsNotNone(self.session.capture(_frame(LEFT_QR)))

    def test_left_only_needs_allow_single(self) -> None:
        self.session.capture(_frame(LEFT_QR))
        with self.assertRaises(RuntimeError):
            self.session.to_invoice()
        inv = self.session.to_invoice(allow_single=True)
        self.assertIsNone(inv.raw_right)
        self.assertEqual(inv.total, Decimal("60"))

    def test_order_fallback_is_flagged(self) -> None:
        self.session.capture(_frame("A:1:2", "B:3:4"))
        self.assertTrue(self.session.ready)
        self.assertTrue(self.session.provisional)

        self.session.reset()
        self.assertFalse(self.session.ready)
        self.assertFalse(self.session.provisional)


if __name__ == "__main__":
    unittest.main()
