import csv
import importlib.util
import io
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch


# Ensure repo root is on sys.path so we can import `einvoice.*`
_REPO_ROOT = Path(__file__).resolve().parents[2]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


from einvoice.capture import CaptureError  # noqa: E402
from einvoice.config import sqlite_url  # noqa: E402
from einvoice.invoice_repo import InvoiceRepository  # noqa: E402
from einvoice.qr_reconcile import ScanResult  # noqa: E402
from einvoice.tw_einvoice_qr import parse_einvoice_qr_codes  # noqa: E402


def _load_cli():
    path = _REPO_ROOT / "scripts" / "scan_invoice_qr.py"
    spec = importlib.util.spec_from_file_location("scan_invoice_qr", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


cli = _load_cli()


class TestCli(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.db_path = self.tmp / "einvoice.db"

        self.with_items = parse_einvoice_qr_codes(
            "AB1234567811401031A2b:Milk:2:30",
            "**:Egg:1:40",
            now=datetime(2025, 1, 3, 9, 0, tzinfo=timezone.utc),
        )
        self.no_items = parse_einvoice_qr_codes(
            "JUST:SOME:TEXT:NOMATCH",
            now=datetime(2025, 1, 2, 9, 0, tzinfo=timezone.utc),
        )
        repo = InvoiceRepository(sqlite_url(self.db_path))
        repo.init()
        try:
            repo.save(self.with_items)
            repo.save(self.no_items)
        finally:
            repo.dispose()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _run(self, *argv: str) -> str:
        out = io.StringIO()
        with redirect_stdout(out):
            cli.main(["--db", str(self.db_path), *argv])
        return out.getvalue()

    def test_list_most_recent_first(self) -> None:
        text = self._run("list")
        self.assertIn("2 invoice(s)", text)
        self.assertLess(text.index(self.with_items.id), text.index(self.no_items.id))
        self.assertIn("items=2\ttotal=$100", text)

    def test_show_items(self) -> None:
        text = self._run("show", self.with_items.id)
        self.assertIn("Milk\t2\t30\t60", text)
        self.assertIn("合計: $100", text)

    def test_show_raw_text_when_no_items(self) -> None:
        text = self._run("show", self.no_items.id)
        self.assertIn("No items parsed", text)
        self.assertIn("LEFT:  JUST:SOME:TEXT:NOMATCH", text)

    def test_show_missing_exits_2(self) -> None:
        with redirect_stderr(io.StringIO()) as err, self.assertRaises(SystemExit) as ctx:
            self._run("show", "inv_missing")
        self.assertEqual(ctx.exception.code, 2)
        self.assertIn("Invoice not found", err.getvalue())

    def test_export_csv(self) -> None:
        output = self.tmp / "out" / "invoices.csv"
        self._run("export", str(output))

        with output.open(encoding="utf-8-sig", newline="") as f:
            rows = list(csv.reader(f))
        self.assertEqual(rows[0], cli.EXPORT_HEADERS)
        # two item rows + one placeholder row for the zero-item invoice
        self.assertEqual(len(rows), 4)
        self.assertEqual(rows[1][2:], ["Milk", "2", "30", "60", "100"])
        self.assertEqual(rows[3][0], self.no_items.id)
        self.assertEqual(rows[3][2:], ["", "", "", "", ""])

    def test_clear_yes(self) -> None:
        self._run("clear", "--yes")
        self.assertIn("0 invoice(s)", self._run("list"))


LEFT_QR = "AB1234567811401031A2b:Milk:2:30"
RIGHT_QR = "**:Egg:1:40"

# image path -> QR payloads "seen" in that image
FRAMES = {
    "left.png": [LEFT_QR],
    "right.png": [RIGHT_QR],
    "both.png": [RIGHT_QR, LEFT_QR],
    "blank.png": [],
}


def _fake_load_image(path):
    if str(path) not in FRAMES:
        raise CaptureError(f"Cannot read image: {path}")
    return str(path)


def _fake_decode(image):
    return [ScanResult(data=t) for t in FRAMES[image]]


class TestScanCommand(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "einvoice.db"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _scan(self, *argv: str) -> str:
        out = io.StringIO()
        with patch.object(cli, "load_image", side_effect=_fake_load_image), \
                patch.object(cli, "decode_scan_results", side_effect=_fake_decode), \
                redirect_stdout(out):
            cli.main(["--db", str(self.db_path), "scan", *argv])
        return out.getvalue()

    def _saved(self) -> list:
        repo = InvoiceRepository(sqlite_url(self.db_path))
        repo.init()
        try:
            return [repo.get_by_id(s.id) for s in repo.list_summaries()]
        finally:
            repo.dispose()

    def test_halves_from_two_images_make_one_invoice(self) -> None:
        text = self._scan("left.png", "right.png")
        self.assertIn("Saved 1 invoice(s)", text)

        saved = self._saved()
        self.assertEqual(len(saved), 1)
        inv = saved[0]
        self.assertEqual(inv.id, parse_einvoice_qr_codes(LEFT_QR, RIGHT_QR).id)
        self.assertEqual([it.name for it in inv.items], ["Milk", "Egg"])
        self.assertEqual(inv.raw_left, LEFT_QR)
        self.assertEqual(inv.raw_right, ":Egg:1:40")

    def test_both_codes_in_one_image(self) -> None:
        text = self._scan("blank.png", "both.png")
        self.assertIn("No QR detected", text)
        self.assertEqual(len(self._saved()), 1)

    def test_unreadable_image_is_skipped(self) -> None:
        text = self._scan("left.png", "missing.png", "right.png")
        self.assertIn("[WARN] Cannot read image: missing.png", text)
        self.assertEqual(len(self._saved()), 1)

    def test_left_only_is_not_saved_by_default(self) -> None:
        text = self._scan("left.png")
        self.assertIn("rerun with --allow-single", text)
        self.assertIn("Saved 0 invoice(s)", text)
        self.assertEqual(self._saved(), [])

    def test_left_only_with_allow_single(self) -> None:
        text = self._scan("left.png", "--allow-single")
        self.assertIn("Saved 1 invoice(s)", text)

        saved = self._saved()
        self.assertEqual(len(saved), 1)
        self.assertIsNone(saved[0].raw_right)
        self.assertEqual([it.name for it in saved[0].items], ["Milk"])


if __name__ == "__main__":
    unittest.main()
