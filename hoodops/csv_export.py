import csv
from io import StringIO

from sqlalchemy.orm import Session

from .models import PayrollPeriod
from .payroll import payroll_breakdown


def export_payroll_csv(db: Session, period: PayrollPeriod) -> str:
    out = StringIO()
    w = csv.writer(out)
    w.writerow(
        [
            "technician",
            "schedule_id",
            "start_dt",
            "job_title",
            "location",
            "hours",
            "hourly_rate",
            "amount",
        ]
    )

    breakdown = payroll_breakdown(db, period)
    for row in breakdown["technicians"]:
        for job in row["jobs"]:
            w.writerow(
                [
                    row["technician_name"],
                    job["schedule_id"],
                    job["start_dt"].isoformat(),
                    job["job_title"],
                    job["location"],
                    job["hours"],
                    row["hourly_rate"],
                    round(job["hours"] * row["hourly_rate"], 2),
                ]
            )
        w.writerow(
            [
                row["technician_name"],
                "",
                "",
                "TOTAL",
                "",
                row["total_hours"],
                row["hourly_rate"],
                row["gross_pay"],
            ]
        )

    return out.getvalue()
