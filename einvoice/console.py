"""Console output helpers shared by the CLI and the capture session."""

from __future__ import annotations

import hashlib
import sys


def log_info(message: str) -> None:
    print(f"[INFO] {message}")


def log_warn(message: str) -> None:
    print(f"[WARN] {message}")


def log_error(message: str) -> None:
    print(f"[ERROR] {message}", file=sys.stderr)


def payload_summary(text: str) -> str:
    """Privacy-safe one-liner for a decoded payload.

    Raw payloads may contain item names, so only length, colon count and a
    short hash are shown.
    """
    s_raw = text or ""
    h = hashlib.sha256(s_raw.encode("utf-8", errors="ignore")).hexdigest()[:10]
    marker = "yes" if s_raw.strip().startswith("**") else "no"
    return f"len={len(s_raw)} trim_len={len(s_raw.strip())} colons={s_raw.count(':')} marker={marker} sha={h}"
