"""
Field Provisioning Script - Creates the Feishu columns each table needs.

Lists the table's existing fields and creates only the missing ones.
Columns whose type or options differ from the mapping rules are reported
and left untouched. Safe to re-run.

Usage:
    python -m scripts.provision_fields --kind books
    python -m scripts.provision_fields --kind movies
    python -m scripts.provision_fields --kind tv --table tblXXXX
"""

import argparse
import asyncio
import logging
import sys

from config import settings
from models.record import ContentKind
from services.contract_validator import ContractValidator
from services.feishu_client import FeishuAPIError, FeishuClient
from services.provisioning import ensure_fields

logger = logging.getLogger("shelfsync.provision")

KIND_ARGS = {
    "books": ContentKind.BOOK,
    "movies": ContentKind.MOVIE,
    "tv": ContentKind.TV,
    "documentary": ContentKind.DOCUMENTARY,
}


async def provision(args) -> int:
    kind = KIND_ARGS[args.kind]
    config = settings.to_sync_config()
    if args.table:
        table_id = args.table
    else:
        # tv/documentary without a table of their own share the movie columns
        table_id, kind = config.feishu.route(kind)
    if not table_id:
        print(f"No table configured for '{args.kind}'. Set FEISHU_TABLE_* or pass --table.")
        return 2

    client = FeishuClient(
        config.feishu,
        ContractValidator.for_environment(settings.APP_ENV, settings.CONTRACT_LOG_DIR),
    )

    try:
        report = await ensure_fields(client, table_id, kind)
    except FeishuAPIError as e:
        logger.error(
            "Provisioning failed",
            extra={"event": "provision_failed", "table_id": table_id, "error": e.message},
        )
        print(f"FAILED: {e}")
        return 1

    print("=" * 60)
    print(f"Table {table_id} ({kind.value})")
    print(f"  Created: {len(report.created)}")
    for name in report.created:
        print(f"    + {name}")
    print(f"  Already present: {len(report.existing)}")
    if report.mismatched:
        print("  Differs from mapping rules (not changed):")
        for m in report.mismatched:
            print(f"    ! {m.display_name}: {m.reason}")
    print("=" * 60)
    return 0


def main():
    parser = argparse.ArgumentParser(description="Create missing Feishu columns for a content kind")
    parser.add_argument("--kind", choices=sorted(KIND_ARGS), required=True, help="Content kind to provision")
    parser.add_argument("--table", type=str, help="Table id (defaults to the configured table for the kind)")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    sys.exit(asyncio.run(provision(args)))


if __name__ == "__main__":
    main()
