from django.core.management.base import BaseCommand, CommandError

from billing.services import BalanceLedger


class Command(BaseCommand):
    help = "Checks that every account balance equals the sum of its ledger entries"

    def add_arguments(self, parser):
        parser.add_argument("--user-id", type=int, help="Audit a single user")

    def handle(self, *args, **options):
        ledger = BalanceLedger()
        if options["user_id"] is not None:
            user_ids = [options["user_id"]]
        else:
            user_ids = list(ledger.store.account_user_ids())

        drifted = 0
        for user_id in user_ids:
            audit = ledger.audit(user_id)
            if audit.is_consistent:
                continue
            drifted += 1
            self.stdout.write(
                self.style.WARNING(
                    f"user={user_id} balance={audit.balance} derived={audit.derived_balance} "
                    f"mismatched_entries={len(audit.mismatched_entries)}"
                )
            )

        if drifted:
            raise CommandError(f"{drifted} of {len(user_ids)} account(s) drifted from their ledger.")
        self.stdout.write(self.style.SUCCESS(f"{len(user_ids)} account(s) consistent."))
