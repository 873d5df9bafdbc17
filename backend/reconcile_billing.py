"""Run one billing maintenance pass, or reconcile specific users, from the command line."""
import argparse
import json
import sys
from pathlib import Path

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

import backend.main  # noqa: E402,F401  registers the database connection factory
from backend.app.billing import BillingError  # noqa: E402
from backend.app.services.billing import get_billing_maintenance, get_billing_service  # noqa: E402


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--user",
        action="append",
        default=[],
        help="Reconcile this user against the billing provider instead of running maintenance.",
    )
    args = parser.parse_args(argv)

    if not args.user:
        summary = get_billing_maintenance().run()
        print("ok: billing maintenance completed " + json.dumps(summary.to_dict(), sort_keys=True))
        return 0

    service = get_billing_service()
    failures = 0
    for user_id in args.user:
        try:
            result = service.reconcile_on_demand(user_id)
        except BillingError as exc:
            failures += 1
            print(f"error: {user_id}: {exc}", file=sys.stderr)
            continue
        print(
            f"ok: {user_id} status={result.access.status.value if result.access.status else None} "
            f"has_access={result.access.has_access} provider_reachable={result.provider_reachable}"
        )
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
