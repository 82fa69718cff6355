"""
One-shot provider reconciliation sweep.

Run via: python -m machina.cli.reconcile

Intended for a cron job when the in-process reconciler is disabled.
Reads the same MACHINA_* configuration as the API server and prints one
JSON line per machine. Exits 1 if any account could not be read.
"""

import asyncio
import json
import sys

from machina.config import settings
from machina.db.session import close_db, init_db
from machina.logging_config import configure_logging, get_logger
from machina.services.credential_vault import init_vault
from machina.services.reconciler import ProviderReconciler, ReconcileAction
from machina.store.sql import SqlRecordStore

logger = get_logger("machina.cli.reconcile")

# Accounts that could not be read. An unsupported provider is a fixed
# configuration and does not fail the run.
_SKIPPED = frozenset(
    {
        ReconcileAction.SKIPPED_NO_CREDENTIALS,
        ReconcileAction.SKIPPED_PROVIDER_ERROR,
    }
)


async def reconcile_once() -> int:
    configure_logging(
        json_logs=settings.json_logs, log_level=settings.log_level, app_name="machina-reconcile"
    )
    await init_db()
    try:
        reconciler = ProviderReconciler(SqlRecordStore(), vault=init_vault())
        result = await reconciler.reconcile()
    finally:
        await close_db()

    for diff in result.results:
        sys.stdout.write(json.dumps(diff.to_dict()) + "\n")

    skipped = sum(1 for diff in result.results if diff.action in _SKIPPED)
    logger.info("Sweep finished", changed=result.changed, skipped=skipped)
    return 1 if skipped else 0


def main() -> None:
    sys.exit(asyncio.run(reconcile_once()))


if __name__ == "__main__":
    main()
