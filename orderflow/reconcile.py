"""Reconciliation sweep runner: repairs order payment_status drift left by failed saga steps."""
import argparse

from orderflow.application.order_service import OrderService
from orderflow.application.pricing import PricingPolicy
from orderflow.application.saga import ReconciliationSweep
from orderflow.core import setup_logging
from orderflow.core_settings import get_settings
from orderflow.infrastructure.cache import get_cache
from orderflow.infrastructure.db import session_scope
from orderflow.infrastructure.products import get_catalog

def run(repair: bool = True) -> int:
    settings = get_settings()
    with session_scope() as db:
        order_service = OrderService(db, get_catalog(), get_cache(), PricingPolicy.from_settings(settings))
        mismatches = ReconciliationSweep(db, order_service).run(repair=repair)
    for m in mismatches:
        print(f"order {m.order_id}: {m.recorded} -> {m.expected} (payment {m.payment_id})"
              f"{'' if m.repaired else ' [not repaired]'}")
    return len(mismatches)

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Order/payment reconciliation sweep")
    parser.add_argument(
        "--dry-run", action="store_true", help="Report mismatches without repairing them"
    )
    return parser

def main(argv=None):
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(service_name=f"{settings.SERVICE_NAME}-reconcile", level=settings.LOG_LEVEL)
    run(repair=not args.dry_run)

if __name__ == "__main__":
    main()
