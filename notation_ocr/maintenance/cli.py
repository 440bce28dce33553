from __future__ import annotations

import argparse


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="notation-maintenance",
        description="Maintenance tasks for the notation OCR workflow store",
    )
    sub = p.add_subparsers(dest="command", required=True)

    purge = sub.add_parser("purge-expired", help="Delete workflow records past their expiry")
    purge.add_argument("--dry-run", action="store_true", help="Count expired records and exit (no deletes)")
    purge.add_argument("--log-level", default="INFO", help="Python logging level (INFO, DEBUG, ...)")
    return p
