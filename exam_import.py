"""
Spreadsheet parsing and row validation for the bulk import pages.

Files are read into lists of dicts keyed by normalised header names. The
validators return ``(clean_rows, errors)`` where every error is
``{'row': n, 'errors': [...], 'data': {...}}`` so the pages can show them
before anything is written.
"""

import csv
import re
from datetime import date, datetime
from io import BytesIO, StringIO

from openpyxl import load_workbook

from exam_stats import is_uint

MAX_UPLOAD_BYTES = 20_000_000
ALLOWED_EXTENSIONS = ('csv', 'xlsx')
TRACK_OPTIONS = ['Aniq fanlar', 'Tabiiy fanlar']

RESULT_SCORE_MIN = 0.0
RESULT_SCORE_MAX = 40.0
RESULT_SCORE_DECIMALS = 1


class ImportFileError(ValueError):
    """Raised when an uploaded file cannot be read as a sheet."""


def normalize_header(value):
    text = str(value if value is not None else '').strip().lower()
    text = text.lstrip('\ufeff')
    text = re.sub(r'\s+', '_', text)
    return re.sub(r'[^a-z0-9_]+', '', text)


def file_extension(filename):
    name = (filename or '').strip().lower()
    if '.' not in name:
        return ''
    return name.rsplit('.', 1)[1]


def _cell_text(value):
    if value is None:
        return ''
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _rows_from_grid(grid):
    headers = []
    seen = {}
    rows = []
    for index, raw_row in enumerate(grid):
        if index == 0:
            for col, raw in enumerate(raw_row, start=1):
                key = normalize_header(raw) or f'col_{col}'
                if key in seen:
                    seen[key] += 1
                    key = f'{key}_{seen[key]}'
                else:
                    seen[key] = 1
                headers.append(key)
            continue
        cells = [_cell_text(v) for v in raw_row]
        if not any(cells):
            continue
        row = {}
        for col, key in enumerate(headers):
            row[key] = cells[col] if col < len(cells) else ''
        row['__rownum'] = index + 1
        rows.append(row)
    return headers, rows


def read_sheet(filename, content):
    """Parse CSV or XLSX bytes into (headers, rows)."""
    ext = file_extension(filename)
    if ext not in ALLOWED_EXTENSIONS:
        raise ImportFileError('Invalid file type. Upload CSV or XLSX.')
    if len(content) > MAX_UPLOAD_BYTES:
        raise ImportFileError('File is too large (max 20 MB).')
    if ext == 'csv':
        try:
            text = content.decode('utf-8-sig')
        except UnicodeDecodeError as exc:
            raise ImportFileError('CSV must be UTF-8 encoded.') from exc
        first_line = text.split('\n', 1)[0]
        delimiter = ';' if first_line.count(';') > first_line.count(',') else ','
        grid = list(csv.reader(StringIO(text), delimiter=delimiter))
    else:
        try:
            workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
        except Exception as exc:
            raise ImportFileError('Could not read spreadsheet. Please verify the file format.') from exc
        try:
            sheet = workbook.worksheets[0]
            grid = [list(r) for r in sheet.iter_rows(values_only=True)]
        finally:
            workbook.close()
    if not grid:
        raise ImportFileError('The file is empty.')
    return _rows_from_grid(grid)


def pick(row, keys):
    for key in keys:
        value = row.get(key)
        if value is not None and str(value).strip() != '':
            return str(value).strip()
    return ''


def normalize_track(value):
    text = (value or '').strip()
    lowered = text.lower().replace('_', ' ')
    if lowered in ('aniq', 'aniq fanlar'):
        return 'Aniq fanlar'
    if lowered in ('tabiiy', 'tabiiy fanlar'):
        return 'Tabiiy fanlar'
    return text


def parse_date(value):
    """Accept YYYY-MM-DD or DD.MM.YYYY; return ISO text or None."""
    text = (value or '').strip()
    if not text:
        return None
    for fmt in ('%Y-%m-%d', '%d.%m.%Y', '%d/%m/%Y'):
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def normalize_academic_year(value):
    return (value or '').strip().replace('/', '-')


def is_valid_academic_year(value):
    if not re.match(r'^[0-9]{4}-[0-9]{4}$', value or ''):
        return False
    return int(value[5:]) == int(value[:4]) + 1


def parse_decimal_score(raw):
    text = re.sub(r'\s+', '', (raw or '').replace(',', '.'))
    if not text:
        return None
    if not re.match(r'^[0-9]+(?:\.[0-9]+)?$', text):
        return None
    return float(text)


def score_precision_ok(score, decimals=RESULT_SCORE_DECIMALS, low=RESULT_SCORE_MIN, high=RESULT_SCORE_MAX):
    if score < low or score > high:
        return False
    text = f'{score:.10f}'.rstrip('0').rstrip('.')
    if '.' not in text:
        return True
    return len(text.split('.', 1)[1]) <= decimals


def validate_pupil_rows(rows):
    clean = []
    errors = []
    for row in rows:
        rownum = row.get('__rownum')
        surname = pick(row, ['surname', 'last_name', 'familya'])
        name = pick(row, ['name', 'first_name', 'ism'])
        middle = pick(row, ['middle_name', 'father_name', 'otchestvo'])
        class_code = ' '.join(pick(row, ['class_code', 'class', 'class_name', 'sinf']).split())
        track = normalize_track(pick(row, ['track', 'yonalish', 'stream']))
        login = pick(row, ['student_login', 'login', 'username', 'pupil_login']).lower()

        row_errors = []
        if not surname:
            row_errors.append('Missing surname')
        if not name:
            row_errors.append('Missing name')
        if not class_code:
            row_errors.append('Missing class_code')
        if not login:
            row_errors.append('Missing student_login')
        if track not in TRACK_OPTIONS:
            row_errors.append('Invalid track (must be "Aniq fanlar" or "Tabiiy fanlar")')
        if login and not re.match(r'^[a-z0-9][a-z0-9._-]{0,19}$', login):
            row_errors.append('student_login must be 1-20 chars: a-z, 0-9, dot, dash, underscore')
        if len(surname) > 50:
            row_errors.append('surname too long (max 50)')
        if len(name) > 40:
            row_errors.append('name too long (max 40)')
        if len(middle) > 40:
            row_errors.append('middle_name too long (max 40)')
        if len(class_code) > 30:
            row_errors.append('class_code too long (max 30)')
        if row_errors:
            errors.append({'row': rownum, 'errors': row_errors, 'data': row})
            continue
        clean.append({
            '__row': rownum,
            'surname': surname,
            'name': name,
            'middle_name': middle or None,
            'class_code': class_code,
            'track': track,
            'student_login': login,
        })

    seen = {}
    unique = []
    for item in clean:
        login = item['student_login']
        if login in seen:
            errors.append({
                'row': item['__row'],
                'errors': [f'Duplicate student_login in file: {login} (first seen at row {seen[login]})'],
                'data': item,
            })
            continue
        seen[login] = item['__row']
        unique.append(item)
    return unique, errors


def validate_subject_rows(rows, max_points_limit=40, default_max=40):
    clean = []
    errors = []
    seen = {}
    for row in rows:
        rownum = row.get('__rownum')
        code = re.sub(r'\s+', '', pick(row, ['code', 'subject_code'])).upper()
        name = ' '.join(pick(row, ['name', 'subject_name', 'fan']).split())
        raw_max = pick(row, ['max_points', 'max', 'max_score'])
        row_errors = []
        if not re.match(r'^[A-Z0-9][A-Z0-9_\-.]{0,29}$', code):
            row_errors.append('Invalid code (A-Z, 0-9, _ - . up to 30 chars)')
        if not name or len(name) > 120:
            row_errors.append('Name is required (max 120 chars)')
        max_points = default_max
        if raw_max:
            if not is_uint(raw_max) or not (1 <= int(raw_max) <= max_points_limit):
                row_errors.append(f'max_points must be 1..{max_points_limit}')
            else:
                max_points = int(raw_max)
        if not row_errors and code in seen:
            row_errors.append(f'Duplicate code in file: {code} (first seen at row {seen[code]})')
        if row_errors:
            errors.append({'row': rownum, 'errors': row_errors, 'data': row})
            continue
        seen[code] = rownum
        clean.append({'__row': rownum, 'code': code, 'name': name, 'max_points': max_points})
    return clean, errors


def validate_result_rows(rows):
    """Long-format result rows; subject matching is by id or code only."""
    clean = []
    errors = []
    for row in rows:
        rownum = row.get('__rownum')
        pupil_id = pick(row, ['pupil_id', 'student_id'])
        login = pick(row, ['student_login', 'login', 'username'])
        subject_id = pick(row, ['subject_id'])
        subject_code = pick(row, ['subject_code', 'code'])
        academic_year = normalize_academic_year(pick(row, ['academic_year', 'year']))
        term = pick(row, ['term', 'semester'])
        exam_name = pick(row, ['exam_name', 'exam'])
        exam_date_raw = pick(row, ['exam_date', 'date'])
        score_raw = pick(row, ['score', 'points', 'ball'])

        row_errors = []
        if not pupil_id and not login:
            row_errors.append('Missing pupil_id or student_login')
        elif pupil_id and not is_uint(pupil_id):
            row_errors.append('pupil_id must be integer')
        if not subject_id and not subject_code:
            row_errors.append('Missing subject_id or subject_code')
        elif subject_id and not is_uint(subject_id):
            row_errors.append('subject_id must be integer')
        if not academic_year:
            row_errors.append('Missing academic_year')
        elif not is_valid_academic_year(academic_year):
            row_errors.append('academic_year must be like 2025/2026')
        if not exam_name:
            row_errors.append('Missing exam_name')
        exam_date = None
        if exam_date_raw:
            exam_date = parse_date(exam_date_raw)
            if exam_date is None:
                row_errors.append('Invalid exam_date (use YYYY-MM-DD or DD.MM.YYYY)')
        term_value = None
        if term:
            if not is_uint(term):
                row_errors.append('term must be integer')
            else:
                term_value = int(term)
                if not 1 <= term_value <= 4:
                    row_errors.append('term must be 1..4')
        score = None
        if not score_raw:
            row_errors.append('Missing score')
        else:
            score = parse_decimal_score(score_raw)
            if score is None:
                row_errors.append('score must be a number (e.g., 27.5 or 27,5) in range 0..40')
            elif not score_precision_ok(score):
                row_errors.append(f'score must be 0..40 and max {RESULT_SCORE_DECIMALS} decimal place(s)')
        if row_errors:
            errors.append({'row': rownum, 'errors': row_errors, 'data': row})
            continue
        clean.append({
            '__row': rownum,
            'pupil_id': int(pupil_id) if is_uint(pupil_id) else None,
            'student_login': login.lower() or None,
            'subject_id': int(subject_id) if is_uint(subject_id) else None,
            'subject_code': subject_code.upper() or None,
            'academic_year': academic_year,
            'term': term_value,
            'exam_name': exam_name,
            'exam_date': exam_date,
            'score': score,
        })

    seen = {}
    unique = []
    for item in clean:
        pupil_ref = item['pupil_id'] or item['student_login']
        subject_ref = item['subject_id'] or item['subject_code']
        key = (pupil_ref, subject_ref) + exam_key(item)
        if key in seen:
            errors.append({
                'row': item['__row'],
                'errors': [f"Duplicate result in file: pupil {pupil_ref}, subject {subject_ref}, "
                           f"exam {item['exam_name']} (first seen at row {seen[key]})"],
                'data': item,
            })
            continue
        seen[key] = item['__row']
        unique.append(item)
    return unique, errors


def exam_key(row):
    return (row['academic_year'], row['term'], row['exam_name'], row['exam_date'])


# ==================== OTM PASTE IMPORT ====================

OTM_POSITIONAL_COLUMNS = ['pupil_id', 'major1', 'major2', 'mandatory1', 'mandatory2', 'mandatory3', 'exam_id']
OTM_REQUIRED_COLUMNS = OTM_POSITIONAL_COLUMNS[:6]

OTM_HEADER_ALIASES = {
    'pupil_id': 'pupil_id', 'pupil': 'pupil_id', 'id': 'pupil_id',
    'oquvchi_id': 'pupil_id', 'student_id': 'pupil_id',
    'major1': 'major1', 'major_1': 'major1', 'fan1': 'major1', 'fan_1': 'major1', 'fan_1_togri': 'major1',
    'major2': 'major2', 'major_2': 'major2', 'fan2': 'major2', 'fan_2': 'major2', 'fan_2_togri': 'major2',
    'mandatory1': 'mandatory1', 'mandatory_1': 'mandatory1', 'ona_tili': 'mandatory1', 'm_ona_tili': 'mandatory1',
    'ona_tili_va_adabiyot': 'mandatory1',
    'mandatory2': 'mandatory2', 'mandatory_2': 'mandatory2', 'matematika': 'mandatory2',
    'm_matematika': 'mandatory2', 'math': 'mandatory2',
    'mandatory3': 'mandatory3', 'mandatory_3': 'mandatory3', 'tarix': 'mandatory3',
    'uzb_tarix': 'mandatory3', 'm_tarix': 'mandatory3', 'history': 'mandatory3', 'ozbekiston_tarixi': 'mandatory3',
    'exam_id': 'exam_id', 'otm_exam_id': 'exam_id',
}

# paste column -> (otm_results slot, max correct answers)
OTM_PASTE_SLOTS = [
    ('major1', 'major1', 30),
    ('major2', 'major2', 30),
    ('mandatory1', 'mandatory_ona_tili', 10),
    ('mandatory2', 'mandatory_matematika', 10),
    ('mandatory3', 'mandatory_uzb_tarix', 10),
]


def _paste_header_key(value):
    text = str(value or '').strip().lstrip('\ufeff').lower()
    for ch in ('`', "'", '’', 'ʻ', '“', '”'):
        text = text.replace(ch, '')
    text = re.sub(r'[^\w]+', '_', text).strip('_')
    return OTM_HEADER_ALIASES.get(text, text)


def split_paste_line(line):
    if '\t' in line:
        return [c.strip() for c in line.split('\t')]
    delimiter = ';' if line.count(';') > line.count(',') else ','
    return [c.strip() for c in next(csv.reader([line], delimiter=delimiter))]


def parse_paste_grid(raw, has_header):
    """Return (headers, rows, error) for pasted spreadsheet text."""
    lines = [ln for ln in (raw or '').replace('\r\n', '\n').replace('\r', '\n').split('\n') if ln.strip()]
    if not lines:
        return [], [], 'Paste data is empty.'
    headers = []
    start = 0
    if has_header:
        headers = [_paste_header_key(c) for c in split_paste_line(lines[0])]
        if not any(headers):
            return [], [], 'Header row is empty.'
        start = 1
    rows = []
    for index in range(start, len(lines)):
        cells = split_paste_line(lines[index])
        row = {}
        for col in range(max(len(headers), len(cells))):
            if col < len(headers) and headers[col]:
                key = headers[col]
            elif col < len(OTM_POSITIONAL_COLUMNS):
                key = OTM_POSITIONAL_COLUMNS[col]
            else:
                key = f'col_{col + 1}'
            row[key] = cells[col] if col < len(cells) else ''
        row['__line'] = index + 1
        rows.append(row)
    if not has_header:
        headers = OTM_POSITIONAL_COLUMNS[:]
    return headers, rows, None


def missing_paste_columns(headers):
    return [col for col in OTM_REQUIRED_COLUMNS if col not in headers]


def otm_rows_from_sheet(headers, rows):
    """Rename read_sheet columns to the paste column names; the first filled alias wins."""
    mapped = []
    for header in headers:
        key = OTM_HEADER_ALIASES.get(header, header)
        if key not in mapped:
            mapped.append(key)
    out = []
    for row in rows:
        item = {'__line': row.get('__rownum')}
        for header in headers:
            key = OTM_HEADER_ALIASES.get(header, header)
            if not item.get(key):
                item[key] = row.get(header, '')
        out.append(item)
    return mapped, out


def _required_uint(raw, low, high, label):
    text = (raw or '').strip()
    if not text:
        return None, f'{label} is required'
    if not is_uint(text):
        return None, f'{label} must be an integer'
    value = int(text)
    if value < low or (high is not None and value > high):
        upper = high if high is not None else 'max'
        return None, f'{label} must be {low}..{upper}'
    return value, None


def validate_paste_row(row, default_exam_id=0):
    """Validate the cell values of one pasted row (no database lookups)."""
    errors = []
    pupil_id, err = _required_uint(row.get('pupil_id'), 1, None, 'pupil_id')
    if err:
        errors.append(err)
    correct = {}
    for column, slot, maximum in OTM_PASTE_SLOTS:
        value, err = _required_uint(row.get(column), 0, maximum, column)
        if err:
            errors.append(err)
        correct[slot] = value or 0
    exam_text = (row.get('exam_id') or '').strip()
    exam_id = None
    if exam_text:
        if not is_uint(exam_text) or int(exam_text) <= 0:
            errors.append('exam_id must be a positive integer')
        else:
            exam_id = int(exam_text)
    if exam_id is None and default_exam_id and default_exam_id > 0:
        exam_id = default_exam_id
    if exam_id is None:
        errors.append('exam_id is required (column or default exam)')
    return {
        'line': row.get('__line'),
        'pupil_id': pupil_id or 0,
        'exam_id': exam_id or 0,
        'correct': correct,
        'errors': errors,
    }
