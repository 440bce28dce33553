from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from notation_ocr.db import close_pool
from notation_ocr.logging_config import setup_logging
from notation_ocr.maintenance.cli import build_parser
from notation_ocr.stores.workflow_store import WorkflowStore


async def purge_expired(store: WorkflowStore, *, dry_run: bool) -> int:
    logger = logging.getLogger("notation_ocr.maintenance")
    if dry_run:
        count = await store.count_expired()
        logger.info("Dry run: %d expired workflows would be deleted", count)
        return count
    return await store.purge_expired()


async def _amain(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level.upper())

    try:
        if args.command == "purge-expired":
            await purge_expired(WorkflowStore(), dry_run=bool(args.dry_run))
    finally:
        await close_pool()
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(_amain()))


if __name__ == "__main__":
    main()
