import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from hoodops.calendar_views import business_today  # noqa: E402
from hoodops.db import SessionLocal  # noqa: E402
from hoodops.observability import configure_logging  # noqa: E402
from hoodops.scheduling import find_or_create_payroll_period  # noqa: E402
from hoodops.services import mark_overdue_invoices  # noqa: E402
from hoodops.travel_time import purge_expired_estimates  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="HoodOps nightly maintenance")
    parser.add_argument("--skip-overdue", action="store_true", help="Do not flag overdue invoices")
    parser.add_argument("--skip-travel-purge", action="store_true", help="Keep expired travel estimates")
    args = parser.parse_args()

    configure_logging()
    output = {"overdue_invoices": [], "travel_estimates_purged": 0, "payroll_period": None}

    with SessionLocal() as db:
        if not args.skip_overdue:
            output["overdue_invoices"] = mark_overdue_invoices(db)
        if not args.skip_travel_purge:
            output["travel_estimates_purged"] = purge_expired_estimates(db)

        period = find_or_create_payroll_period(db, business_today())
        if period:
            output["payroll_period"] = {
                "id": period.id,
                "start_date": period.start_date.isoformat(),
                "end_date": period.end_date.isoformat(),
            }

    print(json.dumps(output, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
