"""Scan Taiwan e-invoice paper QR codes and keep the parsed invoices in SQLite.

Workflow
- Capture a still frame (image file or webcam) with both QR codes in view
- Work out which QR is LEFT and which is RIGHT ('**' continuation)
- Parse the item list and save the invoice (same payload -> same id, overwritten)
- List / show / clear / export the stored invoices

Commands
  scan IMAGE [IMAGE ...]   each image is one capture attempt
  webcam                   [c] capture, [s] save, [r] reset, [q] quit
  list | show ID | clear | export OUTPUT

Dependencies
- Python packages: SQLAlchemy, pandas, opencv-python, zxing-cpp, pyzbar
- System (macOS): `brew install zbar` (required by pyzbar)

Environment
- EINVOICE_DB_URL (default: sqlite:///data/invoices/einvoice.db)
- EINVOICE_CAPTURE_COOLDOWN_SECONDS (default: 0.6)
- EINVOICE_LIST_LIMIT (default: 200)
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path


# When running `python scripts/scan_invoice_qr.py`, Python sets sys.path[0] to
# the scripts/ directory, not the repository root. Add repo root so we can
# import the `einvoice` package without installing it.
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from einvoice.capture import CaptureError, ScanSession, decode_scan_results, load_image  # noqa: E402
from einvoice.config import load_settings, sqlite_url  # noqa: E402
from einvoice.console import log_error, log_info, log_warn, payload_summary  # noqa: E402
from einvoice.invoice_repo import InvoiceRepository  # noqa: E402
from einvoice.models import Invoice, format_decimal  # noqa: E402
from einvoice.qr_reconcile import STATUS_NONE  # noqa: E402
from einvoice.store import InvoiceStore  # noqa: E402


EXPORT_HEADERS = ["發票ID", "建立時間", "品名", "數量", "單價", "小計", "合計"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = load_settings()

    parser = argparse.ArgumentParser(description="Scan Taiwan e-invoice QR codes and manage saved invoices")
    parser.add_argument(
        "--db",
        default="",
        help="SQLite file path (default: $EINVOICE_DB_URL or data/invoices/einvoice.db)",
    )
    parser.add_argument(
        "--debug-decode",
        action="store_true",
        help="Print privacy-safe decode summaries (length/hash/marker) to help debugging.",
    )
    parser.set_defaults(database_url=settings.database_url, list_limit=settings.list_limit)
    sub = parser.add_subparsers(dest="command", required=True)

    p_scan = sub.add_parser("scan", help="Scan still images (one capture per image)")
    p_scan.add_argument("images", nargs="+", help="Image files with both QR codes in view")
    p_scan.add_argument(
        "--allow-single",
        action="store_true",
        help="Save from the LEFT QR alone when the RIGHT QR was never read.",
    )

    p_cam = sub.add_parser("webcam", help="Capture from a webcam")
    p_cam.add_argument("--camera", type=int, default=0, help="OpenCV camera index (default: 0)")
    p_cam.add_argument(
        "--cooldown",
        type=float,
        default=settings.capture_cooldown_seconds,
        help="Seconds to ignore capture triggers after each capture",
    )
    p_cam.add_argument("--allow-single", action="store_true", help="Allow saving with only the LEFT QR.")

    p_list = sub.add_parser("list", help="List saved invoices (most recent first)")
    p_list.add_argument("--limit", type=int, default=settings.list_limit)

    p_show = sub.add_parser("show", help="Show one saved invoice")
    p_show.add_argument("invoice_id")

    p_clear = sub.add_parser("clear", help="Delete all saved invoices")
    p_clear.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    p_export = sub.add_parser("export", help="Export saved invoice items to CSV/TSV")
    p_export.add_argument("output", help="Output file path")
    p_export.add_argument("--format", choices=["tsv", "csv"], default="csv", help="Output delimiter format (default: csv)")

    args = parser.parse_args(argv)
    if args.db:
        args.database_url = sqlite_url(Path(args.db))
    return args


def print_invoice(inv: Invoice) -> None:
    print(f"Invoice {inv.id}  ({inv.created_at_str()})")
    if not inv.items:
        # Nothing parsed: show raw text so the payload can be inspected.
        print("No items parsed. Raw payloads:")
        print(f"LEFT:  {inv.raw_left}")
        if inv.raw_right:
            print(f"RIGHT: {inv.raw_right}")
        return

    print("品名\t數量\t單價\t小計")
    for it in inv.items:
        print(f"{it.name}\t{format_decimal(it.quantity)}\t{format_decimal(it.unit_price)}\t{format_decimal(it.subtotal)}")
    print(f"合計: {inv.amount_str()}")


def run_list(store: InvoiceStore, args: argparse.Namespace) -> None:
    summaries = store.summaries
    log_info(f"{len(summaries)} invoice(s)")
    for s in summaries:
        created = s.created_at.astimezone().strftime("%Y/%m/%d %H:%M:%S")
        print(f"{s.id}\t{created}\titems={s.items_count}\ttotal={s.amount_str()}")


def _report_pair(session: ScanSession, args: argparse.Namespace, hits: list) -> None:
    if args.debug_decode:
        log_info(f"[debug] decoded_texts={len(hits)}")
        for i, r in enumerate(hits[:8]):
            log_info(f"[debug] hit[{i}] {payload_summary(r.data)}")
    pair = session.last_pair
    if pair is not None and pair.status == STATUS_NONE:
        log_warn("No QR detected; raise brightness / move closer / keep both QR codes in frame")
    log_info(session.hint())


def _save_session(store: InvoiceStore, session: ScanSession, *, allow_single: bool) -> Invoice:
    inv = session.to_invoice(allow_single=allow_single)
    if session.provisional:
        log_warn("LEFT/RIGHT order is provisional; check the parsed items")
    store.save(inv)
    log_info(f"Saved invoice {inv.id} (items={len(inv.items)}, total={inv.amount_str() or '-'})")
    session.reset()
    return inv


def run_scan(store: InvoiceStore, args: argparse.Namespace) -> None:
    # Images are processed back to back, so no cool-down between them.
    session = ScanSession(cooldown_seconds=0.0)
    saved = 0

    for path in args.images:
        hits: list = []

        def _decode(p: Path = Path(path)) -> list:
            hits.extend(decode_scan_results(load_image(p)))
            return hits

        try:
            session.capture(_decode)
        except CaptureError as e:
            log_warn(str(e))
            continue
        log_info(f"file={path}")
        _report_pair(session, args, hits)

        if session.ready:
            inv = _save_session(store, session, allow_single=False)
            print_invoice(inv)
            saved += 1

    if session.left is not None and not session.ready:
        if args.allow_single:
            inv = _save_session(store, session, allow_single=True)
            print_invoice(inv)
            saved += 1
        else:
            log_warn("Incomplete invoice left over (RIGHT QR missing); rerun with --allow-single to save it")

    log_info(f"Saved {saved} invoice(s)")


def run_webcam(store: InvoiceStore, args: argparse.Namespace) -> None:
    try:
        import cv2
    except ImportError as e:
        raise RuntimeError("OpenCV not installed. Run: `poetry add opencv-python` (and `poetry install`).") from e

    cap = cv2.VideoCapture(args.camera)
    if not cap.isOpened():
        raise CaptureError(
            "Cannot open webcam. Check macOS Camera permission for your terminal/VS Code, "
            "or try a different --camera index (e.g., 1)."
        )

    if hasattr(cv2, "setLogLevel") and hasattr(cv2, "LOG_LEVEL_ERROR"):
        cv2.setLogLevel(cv2.LOG_LEVEL_ERROR)

    session = ScanSession(cooldown_seconds=args.cooldown)
    log_info("Webcam opened. Show the invoice QR codes to the camera.")
    log_info("Keys: [c] capture+decode, [s] save, [r] reset, [q] quit")

    last_frame = None
    try:
        while True:
            ok, frame = cap.read()
            if not ok:
                log_warn("Failed to read frame from webcam")
                time.sleep(0.05)
                continue
            last_frame = frame.copy()

            gray = (160, 160, 160)
            green = (0, 255, 0)
            halves = int(session.left is not None) + int(session.right is not None)
            cv2.putText(frame, f"QR: {halves}/2", (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 1.0, green if session.ready else gray, 2)
            cv2.putText(frame, "Press 'c' to capture", (10, 65), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (200, 200, 200), 2)
            cv2.imshow("scan_invoice_qr", frame)

            key = cv2.waitKey(1) & 0xFF
            if key == ord("q"):
                break
            if key == ord("r"):
                session.reset()
                log_info("Reset current invoice capture")
                continue
            if key == ord("c"):
                hits: list = []

                def _decode() -> list:
                    hits.extend(decode_scan_results(last_frame))
                    return hits

                if session.capture(_decode) is not None:
                    _report_pair(session, args, hits)
                continue
            if key == ord("s"):
                if not session.ready and not (args.allow_single and session.left is not None):
                    log_warn("Nothing to save yet. " + session.hint())
                    continue
                inv = _save_session(store, session, allow_single=args.allow_single)
                print_invoice(inv)
    finally:
        cap.release()
        cv2.destroyAllWindows()


def run_show(store: InvoiceStore, args: argparse.Namespace) -> None:
    inv = store.get_by_id(args.invoice_id)
    if inv is None:
        raise RuntimeError(f"Invoice not found: {args.invoice_id}")
    print_invoice(inv)


def run_clear(store: InvoiceStore, args: argparse.Namespace) -> None:
    if not args.yes:
        answer = input(f"Delete all {len(store.summaries)} saved invoice(s)? [y/N] ").strip().lower()
        if answer not in ("y", "yes"):
            log_info("Cancelled")
            return
    store.clear_all()
    log_info("All invoices deleted")


def invoices_to_frame(invoices: list[Invoice]):
    import pandas as pd

    rows = []
    for inv in invoices:
        created = inv.created_at_str()
        total = format_decimal(inv.total) if inv.total is not None else ""
        if not inv.items:
            rows.append([inv.id, created, "", "", "", "", total])
            continue
        for it in inv.items:
            rows.append([
                inv.id,
                created,
                it.name,
                format_decimal(it.quantity),
                format_decimal(it.unit_price),
                format_decimal(it.subtotal),
                total,
            ])
    return pd.DataFrame(rows, columns=EXPORT_HEADERS)


def run_export(store: InvoiceStore, args: argparse.Namespace) -> None:
    invoices = [inv for inv in (store.get_by_id(s.id) for s in store.summaries) if inv is not None]
    df = invoices_to_frame(invoices)

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    delimiter = "\t" if args.format == "tsv" else ","
    df.to_csv(output_path, sep=delimiter, index=False, encoding="utf-8-sig")
    log_info(f"Exported {len(invoices)} invoice(s) / {len(df)} row(s) to {output_path}")


COMMANDS = {
    "list": run_list,
    "scan": run_scan,
    "webcam": run_webcam,
    "show": run_show,
    "clear": run_clear,
    "export": run_export,
}


def main(argv: list[str] | None = None) -> None:
    try:
        args = parse_args(argv)
        limit = args.limit if args.command == "list" else args.list_limit
        store = InvoiceStore(InvoiceRepository(args.database_url), summary_limit=limit)
        with store:
            COMMANDS[args.command](store, args)
    except ModuleNotFoundError as e:
        log_error(str(e))
        if "pyzbar" in str(e) or "zbar" in str(e) or "cv2" in str(e):
            log_error("Missing dependency. Try: `brew install zbar` then `poetry add pyzbar opencv-python`.")
        elif "einvoice" in str(e):
            log_error("Cannot import local package 'einvoice'. Run from repo root, or keep the sys.path bootstrap at top of this script.")
        else:
            log_error("Missing module. Install dependencies and try again.")
        sys.exit(2)
    except RuntimeError as e:
        log_error(str(e))
        sys.exit(2)


if __name__ == "__main__":
    main()
