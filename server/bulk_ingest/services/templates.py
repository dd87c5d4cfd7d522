"""Downloadable import templates listing the expected columns."""
from __future__ import annotations

import csv
import io
from datetime import datetime, timezone
from typing import NamedTuple

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

TEMPLATE_VERSION = "v1"


class TemplateColumn(NamedTuple):
    header: str
    instruction: str
    example: str


TEMPLATE_COLUMNS = (
    TemplateColumn("object_code", "Required. 3-50 letters, digits, - or _", "EVD-2024-0001"),
    TemplateColumn("name", "Required. Up to 255 characters", "Laptop seized at scene"),
    TemplateColumn("rfid_tag_id", "Required. Unique tag, up to 50 characters", "RFID000001"),
    TemplateColumn("description", "Optional. Up to 1000 characters", "Silver 13-inch laptop with charger"),
    TemplateColumn("object_type", "Optional. Defaults to docket", "docket"),
    TemplateColumn("category", "Optional", "electronics"),
    TemplateColumn("priority_level", "low, normal, high or critical", "normal"),
    TemplateColumn("status", "active, inactive, archived, lost or destroyed", "active"),
    TemplateColumn("location", "Optional", "Evidence Room A"),
    TemplateColumn("assigned_to", "Optional", "Officer Smith"),
    TemplateColumn("date_collected", "Optional date, e.g. 2024-01-15", "2024-01-15"),
    TemplateColumn("metadata", "Optional JSON object; extra columns are kept too", '{"case_number": "C-1001"}'),
)


def template_headers() -> list[str]:
    return [column.header for column in TEMPLATE_COLUMNS]


def build_csv_template() -> tuple[bytes, str]:
    """Return a CSV template with the header row and one example row."""

    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow(template_headers())
    writer.writerow([column.example for column in TEMPLATE_COLUMNS])
    return out.getvalue().encode("utf-8"), f"object_import_template_{TEMPLATE_VERSION}.csv"


def build_xlsx_template() -> tuple[bytes, str]:
    """Return an XLSX template: headers and an example row, with instructions on a second sheet."""

    wb = Workbook()
    ws = wb.active
    ws.title = "OBJECTS"
    ws.append(template_headers())
    ws.append([column.example for column in TEMPLATE_COLUMNS])
    for cell in ws[1]:
        cell.font = Font(bold=True)
    ws.freeze_panes = "A2"
    for idx, _ in enumerate(TEMPLATE_COLUMNS, start=1):
        ws.column_dimensions[get_column_letter(idx)].width = 26

    info = wb.create_sheet("INSTRUCTIONS")
    info.append(["Column", "Instruction"])
    for column in TEMPLATE_COLUMNS:
        info.append([column.header, column.instruction])
    info.append([])
    info.append(["Template", TEMPLATE_VERSION])
    info.append(["Generated at", datetime.now(timezone.utc).isoformat()])
    info.column_dimensions["A"].width = 20
    info.column_dimensions["B"].width = 60

    out = io.BytesIO()
    wb.save(out)
    return out.getvalue(), f"object_import_template_{TEMPLATE_VERSION}.xlsx"
