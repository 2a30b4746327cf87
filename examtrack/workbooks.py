# examtrack/workbooks.py
"""openpyxl helpers shared by student import and the Excel exports."""
import io
import logging

import openpyxl
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from .errors import ApiError

logger = logging.getLogger(__name__)

STUDENT_COLUMNS = {
    'index_number': ['index number', 'index_number', 'indexnumber', 'index no', 'index'],
    'first_name': ['first name', 'first_name', 'firstname'],
    'last_name': ['last name', 'last_name', 'lastname', 'surname'],
    'program': ['program', 'programme'],
    'level': ['level'],
    'option': ['option'],
    'department': ['department'],
}
REQUIRED_STUDENT_COLUMNS = ('index_number', 'first_name', 'last_name', 'program', 'level')

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
THIN_BORDER = Border(
    left=Side(style='thin'),
    right=Side(style='thin'),
    top=Side(style='thin'),
    bottom=Side(style='thin'),
)


def read_student_rows(stream):
    """
    Read student rows from an uploaded .xlsx workbook.
    Expected header row: Index Number, First Name, Last Name, Program, Level
    (Option and Department optional). Returns a list of camelCase dicts.
    """
    try:
        wb = openpyxl.load_workbook(stream, read_only=True, data_only=True)
    except Exception as e:
        logger.info("Rejected student workbook: %s", e)
        raise ApiError("Could not read the uploaded workbook. Upload a valid .xlsx file.")

    ws = wb.active
    rows = ws.iter_rows(values_only=True)
    header = next(rows, None)
    if not header:
        raise ApiError("The uploaded workbook is empty")

    normalized = [str(h or '').strip().lower() for h in header]
    mapped = {}
    for key, names in STUDENT_COLUMNS.items():
        for name in names:
            if name in normalized:
                mapped[key] = normalized.index(name)
                break

    missing = [c for c in REQUIRED_STUDENT_COLUMNS if c not in mapped]
    if missing:
        raise ApiError("Missing columns in workbook", missing=missing)

    students = []
    for row in rows:
        if row is None or all(cell in (None, '') for cell in row):
            continue
        record = {}
        for key, idx in mapped.items():
            value = row[idx] if idx < len(row) else None
            if isinstance(value, float) and value.is_integer():
                value = int(value)
            record[key] = str(value).strip() if value is not None else None
        students.append({
            "indexNumber": record.get('index_number'),
            "firstName": record.get('first_name'),
            "lastName": record.get('last_name'),
            "program": record.get('program'),
            "level": record.get('level'),
            "option": record.get('option'),
            "department": record.get('department'),
        })
    wb.close()
    return students


def _text_cell(cell):
    # strings from user input are never written as formulas
    if isinstance(cell.value, str):
        cell.data_type = 's'
    return cell


def build_workbook(sheets):
    """
    ``sheets`` is a list of ``(title, headers, rows, preamble)`` tuples;
    ``preamble`` is an optional list of ``(label, value)`` pairs written above
    the table. Returns a BytesIO positioned at 0.
    """
    wb = openpyxl.Workbook()
    wb.remove(wb.active)

    for title, headers, rows, preamble in sheets:
        ws = wb.create_sheet(title=title[:31])
        row_no = 1
        for label, value in preamble or []:
            ws.cell(row=row_no, column=1, value=label).font = Font(bold=True)
            _text_cell(ws.cell(row=row_no, column=2, value=value))
            row_no += 1
        if preamble:
            row_no += 1

        for col, header in enumerate(headers, start=1):
            cell = ws.cell(row=row_no, column=col, value=header)
            cell.font = HEADER_FONT
            cell.fill = HEADER_FILL
            cell.border = THIN_BORDER
            cell.alignment = Alignment(horizontal='center', vertical='center')

        for values in rows:
            row_no += 1
            for col, value in enumerate(values, start=1):
                cell = _text_cell(ws.cell(row=row_no, column=col, value=value))
                cell.border = THIN_BORDER

        for col, header in enumerate(headers, start=1):
            width = max([len(str(header))] + [len(str(r[col - 1] or '')) for r in rows]) + 2
            ws.column_dimensions[get_column_letter(col)].width = min(width, 50)

    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)
    return buf
