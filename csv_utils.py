import csv
import re
from io import StringIO
from typing import Sequence

from models import CashFlow

_DANGEROUS_PATTERNS = (
    r"^cmd\s*",
    r"^powershell\s*",
    r"^bash\s*",
    r"^sh\s*",
    r"^\.",
    r"^http[s]?://",
)


def sanitize_csv_value(value: str) -> str:
    """
    Guard against spreadsheet formula injection by prefixing risky cells with a tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()
    if value.startswith(("=", "+", "-", "@", "\t", "\r")):
        return "\t" + value
    for pattern in _DANGEROUS_PATTERNS:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value
    return value


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}{abs(cents) // 100}.{abs(cents) % 100:02d}"


def export_cash_flows(cash_flows: Sequence[CashFlow]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        ["Date", "Type", "Amount", "Account", "Category", "Description", "Subscription"]
    )
    for cash_flow in cash_flows:
        writer.writerow(
            [
                cash_flow.occurred_at.isoformat(sep=" ", timespec="seconds"),
                cash_flow.type.value,
                format_cents(cash_flow.amount_cents),
                sanitize_csv_value(cash_flow.account.name if cash_flow.account else ""),
                sanitize_csv_value(
                    cash_flow.category.name if cash_flow.category else ""
                ),
                sanitize_csv_value(cash_flow.description or ""),
                cash_flow.subscription_id or "",
            ]
        )
    return output.getvalue()
