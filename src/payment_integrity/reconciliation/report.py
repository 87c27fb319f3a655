"""Report generation for reconciliation runs."""

import csv
import io
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..gateway import to_major_units
from .models import ReconciliationCategory, ReconciliationItem, ReconciliationRun
from .reconciler import item_sort_key

CSV_COLUMNS = [
    "run_id",
    "category",
    "session_id",
    "payment_id",
    "external_request_ref",
    "external_transaction_ref",
    "local_status",
    "external_status",
    "session_status",
    "amount_expected",
    "amount_confirmed",
    "external_amount",
    "local_result_code",
    "external_result_code",
    "payer",
    "initiated_at",
    "confirmed_at",
    "issues",
]


def _amount(value: Optional[int]) -> str:
    if value is None:
        return ""
    return f"{to_major_units(value):.2f}"


def _timestamp(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def _text(value: Any) -> str:
    return "" if value is None else str(value)


class ReportGenerator:
    """Generator for reconciliation reports in various formats."""

    def __init__(self, run: ReconciliationRun):
        """Initialize the report generator.

        Args:
            run: The reconciliation run to render.
        """
        self.run = run

    def summary(self) -> Dict[str, Any]:
        """Counts, the confirmed total and every discrepancy with its reasons."""
        data = self.run.to_summary_dict()
        data["discrepancies"] = [
            {
                "payment_id": item.payment_id,
                "session_id": item.session_id,
                "external_transaction_ref": item.external_transaction_ref,
                "issues": [issue.value for issue in item.issues],
            }
            for item in self.run.items_in(ReconciliationCategory.DISCREPANCY)
        ]
        return data

    def to_json(self, include_details: bool = True, indent: int = 2) -> str:
        """Generate JSON representation of the run.

        Args:
            include_details: If True, include every item. If False, only the summary.
            indent: JSON indentation level.
        """
        data = self.summary()
        if include_details:
            data["items"] = [item.model_dump(mode="json") for item in self.rows()]
        return json.dumps(data, indent=indent, sort_keys=True)

    def rows(self) -> List[ReconciliationItem]:
        return sorted(self.run.items, key=item_sort_key)

    def to_csv(self) -> str:
        """One row per payment/session pairing with a fixed column order.

        Rendering the same run always produces the same bytes.
        """
        output = io.StringIO()
        writer = csv.writer(output, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for item in self.rows():
            writer.writerow([
                self.run.run_id,
                item.category.value,
                _text(item.session_id),
                item.payment_id,
                item.external_request_ref,
                _text(item.external_transaction_ref),
                item.local_status,
                _text(item.external_status),
                _text(item.session_status),
                _amount(item.amount_expected),
                _amount(item.amount_confirmed),
                _amount(item.external_amount),
                _text(item.local_result_code),
                _text(item.external_result_code),
                item.payer,
                _timestamp(item.initiated_at),
                _timestamp(item.confirmed_at),
                ";".join(issue.value for issue in item.issues),
            ])
        return output.getvalue()

    def to_summary_text(self) -> str:
        summary = self.run.summary

        lines = [
            "=" * 60,
            "RECONCILIATION RUN SUMMARY",
            "=" * 60,
            f"Run ID: {self.run.run_id}",
            f"Status: {self.run.status.value}",
            f"Triggered By: {self.run.triggered_by.value}",
            "",
            "Window:",
            f"  Start: {self.run.window_start.isoformat()}",
            f"  End: {self.run.window_end.isoformat()}",
        ]
        if self.run.filters:
            lines.extend([
                "",
                "Filters:",
                f"  Client: {self.run.filters.client_id or 'any'}",
                f"  Provider: {self.run.filters.provider_id or 'any'}",
            ])
        lines.extend([
            "",
            "Statistics:",
            f"  Payments In Window: {summary.total_in_window}",
            f"  Discrepancies: {summary.discrepancy}",
            f"  Unmatched: {summary.unmatched}",
            f"  Pending: {summary.pending}",
            f"  Matched: {summary.matched}",
            f"  Skipped: {summary.skipped}",
            f"  Total Confirmed: {_amount(summary.total_confirmed_amount)}",
            "",
            f"Executed At: {self.run.executed_at.isoformat()}",
            f"Completed At: {self.run.completed_at.isoformat()}",
            "=" * 60,
        ])
        return "\n".join(lines)

    def to_detailed_text(self) -> str:
        """Summary followed by every discrepancy and unmatched item."""
        lines = [self.to_summary_text(), ""]

        for category, title in (
            (ReconciliationCategory.DISCREPANCY, "DISCREPANCIES"),
            (ReconciliationCategory.UNMATCHED, "UNMATCHED PAYMENTS"),
        ):
            items = self.run.items_in(category)
            if not items:
                continue
            lines.extend([title, "-" * 40])
            for item in items:
                lines.extend([
                    f"\nPayment: {item.payment_id} | Session: {item.session_id or '-'}",
                    f"  Issues: {', '.join(issue.value for issue in item.issues)}",
                    f"  Local: {item.local_status} {_amount(item.amount_confirmed or item.amount_expected)}",
                    f"  Gateway: {item.external_status or '-'} {_amount(item.external_amount) or '-'}",
                    f"  Transaction Ref: {item.external_transaction_ref or '-'}",
                ])
            lines.append("")

        pending = self.run.items_in(ReconciliationCategory.PENDING)
        matched = self.run.items_in(ReconciliationCategory.MATCHED)
        lines.extend([
            "OTHER",
            "-" * 40,
            f"Pending: {len(pending)} payments awaiting confirmation",
            f"Matched: {len(matched)} payments",
            "",
        ])
        return "\n".join(lines)
