import io
import os
import re
import zipfile

import pandas as pd
import openpyxl
from openpyxl import Workbook

from utils.logger import get_logger

logger = get_logger(__name__)

EXCEL_EXTENSIONS = ('.xlsx', '.xls', '.xlsm')
EXCEL_ERRORS = (ValueError, OSError, KeyError, zipfile.BadZipFile)


def is_excel_file(filename):
    return bool(filename) and filename.lower().endswith(EXCEL_EXTENSIONS)


def sanitize_attachment_name(name):
    """Reduce a mail attachment name to a safe file name"""
    cleaned = os.path.basename((name or '').strip()).replace('..', '')
    cleaned = re.sub(r'[^A-Za-z0-9._-]', '_', cleaned).strip('_')
    return cleaned or 'attachment'


def create_template_from_fields(fields, output_path):
    """Create an Excel template from a list of field names"""
    wb = Workbook()
    ws = wb.active
    ws.title = "Data"

    ws.append(list(fields))

    for col in range(1, len(fields) + 1):
        column_letter = openpyxl.utils.get_column_letter(col)
        ws.column_dimensions[column_letter].width = 15

    wb.save(output_path)
    return output_path


def parse_excel_template(template_path):
    """Read the header row of an Excel template"""
    try:
        df = pd.read_excel(template_path, nrows=1)
    except EXCEL_ERRORS as e:
        logger.warning('Failed to parse Excel template %s: %s', template_path, e)
        return []
    return [str(col).strip() for col in df.columns if not str(col).startswith('Unnamed')]


def parse_reply_excel(file_data, field_names=None):
    """
    Parse a filled-in reply workbook (bytes or path).
    Returns the first data row as {column: text}; restricted to field_names when given.
    """
    source = io.BytesIO(file_data) if isinstance(file_data, (bytes, bytearray)) else file_data
    try:
        df = pd.read_excel(source)
    except EXCEL_ERRORS as e:
        logger.warning('Failed to parse reply workbook: %s', e)
        return {}

    df = df.dropna(how='all')
    if len(df) == 0:
        return {}

    row_data = df.iloc[0].to_dict()
    cleaned_data = {}
    for field_name, value in row_data.items():
        field_name = str(field_name).strip()
        if field_names and field_name not in field_names:
            continue
        if pd.notna(value):
            cleaned_data[field_name] = str(value)
    return cleaned_data


def write_workbook(rows, columns, output_path, sheet_name='Aggregated'):
    """Write rows (list of dicts) to an xlsx file with fixed column order"""
    df = pd.DataFrame(rows, columns=columns)
    with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
        df.to_excel(writer, index=False, sheet_name=sheet_name)
        ws = writer.sheets[sheet_name]
        for col in range(1, len(columns) + 1):
            ws.column_dimensions[openpyxl.utils.get_column_letter(col)].width = 18
    return output_path
