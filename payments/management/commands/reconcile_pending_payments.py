import time

from django.core.management.base import BaseCommand

from storefront.container import get_services
from storefront.errors import StoreError


class Command(BaseCommand):
    help = "Look up pending wallet payments with their provider and settle them"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=1)

    def handle(self, *args, **opts):
        reconciliation = get_services().reconciliation
        pending = reconciliation.pending_correlation_ids(opts["older_than_minutes"], opts["max"])

        if not pending:
            self.stdout.write(self.style.SUCCESS("No pending payments to reconcile."))
            return

        for correlation_id in pending:
            try:
                result = reconciliation.reconcile(correlation_id)
                style = self.style.SUCCESS if result.changed else self.style.NOTICE
                self.stdout.write(style(f"{correlation_id}: {result.payment.status} ({result.outcome.value})"))
            except StoreError as e:
                self.stdout.write(self.style.WARNING(f"{correlation_id}: {e.message}"))
            if opts["sleep"]:
                time.sleep(opts["sleep"])
