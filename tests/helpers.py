from __future__ import annotations

from io import BytesIO

from openpyxl import Workbook

HEADER = ["Case No", "No. of Critical Parts", "Total Lines", "EKC", "EKM"]


def xlsx_bytes(rows, header=HEADER, sheet_name="Sheet1") -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_name
    if header is not None:
        ws.append(list(header))
    for row in rows:
        ws.append(list(row))
    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def csv_bytes(rows, header=HEADER) -> bytes:
    lines = []
    if header is not None:
        lines.append(",".join(header))
    for row in rows:
        lines.append(",".join("" if cell is None else str(cell) for cell in row))
    return ("\n".join(lines) + "\n").encode("utf-8")
