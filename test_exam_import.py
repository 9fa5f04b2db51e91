from io import BytesIO

import pytest
from openpyxl import Workbook

import exam_import as imp


def test_read_sheet_csv_with_bom_and_semicolons():
    content = "\ufeffSurname;Name;Class Code\nAliyev;Vali;9A\n;;\nKarimova;Nodira;10B\n".encode("utf-8")

    headers, rows = imp.read_sheet("pupils.csv", content)

    assert headers == ["surname", "name", "class_code"]
    assert [r["surname"] for r in rows] == ["Aliyev", "Karimova"]
    assert rows[0]["__rownum"] == 2
    assert rows[1]["__rownum"] == 4


def test_read_sheet_xlsx_renames_duplicate_headers_and_whole_floats():
    wb = Workbook()
    ws = wb.active
    ws.append(["Score", "Score", None])
    ws.append([27.0, 27.5, "x"])
    buf = BytesIO()
    wb.save(buf)

    headers, rows = imp.read_sheet("results.XLSX", buf.getvalue())

    assert headers == ["score", "score_2", "col_3"]
    assert rows[0]["score"] == "27"
    assert rows[0]["score_2"] == "27.5"
    assert rows[0]["col_3"] == "x"


def test_read_sheet_rejects_other_extensions():
    with pytest.raises(imp.ImportFileError) as exc:
        imp.read_sheet("pupils.txt", b"a,b")
    assert str(exc.value) == "Invalid file type. Upload CSV or XLSX."


def test_read_sheet_rejects_broken_workbook():
    with pytest.raises(imp.ImportFileError):
        imp.read_sheet("results.xlsx", b"not a zip")


def test_validate_pupil_rows_normalizes_and_flags_duplicates():
    rows = [
        {"__rownum": 2, "surname": "Aliyev", "name": "Vali", "class_code": " 9  A ", "track": "aniq", "student_login": "ALIYEV1"},
        {"__rownum": 3, "surname": "Karimova", "name": "Nodira", "class_code": "10B", "track": "Tabiiy", "student_login": "karimova"},
        {"__rownum": 4, "surname": "Aliyev", "name": "Soli", "class_code": "9A", "track": "Aniq fanlar", "student_login": "aliyev1"},
        {"__rownum": 5, "surname": "", "name": "X", "class_code": "9A", "track": "Other", "student_login": "x"},
    ]

    clean, errors = imp.validate_pupil_rows(rows)

    assert [c["student_login"] for c in clean] == ["aliyev1", "karimova"]
    assert clean[0]["class_code"] == "9 A"
    assert clean[0]["track"] == "Aniq fanlar"
    assert clean[1]["track"] == "Tabiiy fanlar"
    assert clean[0]["middle_name"] is None

    by_row = {e["row"]: e["errors"] for e in errors}
    assert "Missing surname" in by_row[5]
    assert 'Invalid track (must be "Aniq fanlar" or "Tabiiy fanlar")' in by_row[5]
    assert by_row[4] == ["Duplicate student_login in file: aliyev1 (first seen at row 2)"]


def test_validate_subject_rows():
    rows = [
        {"__rownum": 2, "code": "math", "name": "Matematika", "max_points": ""},
        {"__rownum": 3, "code": "MATH", "name": "Again", "max_points": "30"},
        {"__rownum": 4, "code": "PHY", "name": "Fizika", "max_points": "50"},
        {"__rownum": 5, "code": "BIO", "name": "Biologiya", "max_points": "35"},
    ]

    clean, errors = imp.validate_subject_rows(rows)

    assert clean == [
        {"__row": 2, "code": "MATH", "name": "Matematika", "max_points": 40},
        {"__row": 5, "code": "BIO", "name": "Biologiya", "max_points": 35},
    ]
    by_row = {e["row"]: e["errors"] for e in errors}
    assert by_row[3] == ["Duplicate code in file: MATH (first seen at row 2)"]
    assert by_row[4] == ["max_points must be 1..40"]


def test_validate_result_rows():
    rows = [
        {"__rownum": 2, "student_login": "Aliyev1", "subject_code": "math", "academic_year": "2024/2025",
         "term": "1", "exam_name": "Midterm", "exam_date": "15.10.2024", "score": "27,5"},
        {"__rownum": 3, "pupil_id": "7", "subject_id": "2", "academic_year": "2024-2026",
         "term": "5", "exam_name": "Midterm", "exam_date": "2024-13-01", "score": "41"},
        {"__rownum": 4, "pupil_id": "7", "subject_id": "2", "academic_year": "2024-2025",
         "exam_name": "Final", "score": "12.25"},
        {"__rownum": 5, "academic_year": "", "exam_name": "", "score": ""},
    ]

    clean, errors = imp.validate_result_rows(rows)

    assert len(clean) == 1
    row = clean[0]
    assert row["student_login"] == "aliyev1"
    assert row["subject_code"] == "MATH"
    assert row["academic_year"] == "2024-2025"
    assert row["exam_date"] == "2024-10-15"
    assert row["score"] == 27.5
    assert imp.exam_key(row) == ("2024-2025", 1, "Midterm", "2024-10-15")

    by_row = {e["row"]: e["errors"] for e in errors}
    assert "academic_year must be like 2025/2026" in by_row[3]
    assert "term must be 1..4" in by_row[3]
    assert "Invalid exam_date (use YYYY-MM-DD or DD.MM.YYYY)" in by_row[3]
    assert any(e.startswith("score must be 0..40") for e in by_row[3])
    assert any(e.startswith("score must be 0..40") for e in by_row[4])
    assert "Missing pupil_id or student_login" in by_row[5]
    assert "Missing score" in by_row[5]


def test_parse_date_formats():
    assert imp.parse_date("2025-01-31") == "2025-01-31"
    assert imp.parse_date("31/01/2025") == "2025-01-31"
    assert imp.parse_date("31-01-2025") is None
    assert imp.parse_date("") is None


def test_parse_paste_grid_maps_header_aliases():
    raw = "O'quvchi ID\tFan1\tFan2\tOna tili\tMatematika\tTarix\n12\t25\t20\t8\t9\t7\n\n"

    headers, rows, error = imp.parse_paste_grid(raw, has_header=True)

    assert error is None
    assert headers == ["pupil_id", "major1", "major2", "mandatory1", "mandatory2", "mandatory3"]
    assert imp.missing_paste_columns(headers) == []
    assert rows[0]["pupil_id"] == "12"
    assert rows[0]["mandatory3"] == "7"
    assert rows[0]["__line"] == 2


def test_positional_paste_uses_default_exam():
    headers, rows, error = imp.parse_paste_grid("5,30,0,10,10,10\n6;1;2;3;4;5;9", has_header=False)
    assert error is None
    assert headers == imp.OTM_POSITIONAL_COLUMNS

    first = imp.validate_paste_row(rows[0], default_exam_id=3)
    assert first["errors"] == []
    assert first["exam_id"] == 3
    assert first["correct"]["major1"] == 30
    assert first["correct"]["mandatory_uzb_tarix"] == 10

    second = imp.validate_paste_row(rows[1], default_exam_id=3)
    assert second["exam_id"] == 9


def test_paste_row_range_and_missing_exam():
    row = {"__line": 2, "pupil_id": "5", "major1": "31", "major2": "0",
           "mandatory1": "1", "mandatory2": "1", "mandatory3": "abc"}

    out = imp.validate_paste_row(row)

    assert "major1 must be 0..30" in out["errors"]
    assert "mandatory3 must be an integer" in out["errors"]
    assert "exam_id is required (column or default exam)" in out["errors"]


def test_paste_grid_empty_and_missing_columns():
    assert imp.parse_paste_grid("  \n\n", has_header=True) == ([], [], "Paste data is empty.")
    headers, _rows, _error = imp.parse_paste_grid("pupil_id,fan1\n1,2", has_header=True)
    assert imp.missing_paste_columns(headers) == ["major2", "mandatory1", "mandatory2", "mandatory3"]


def test_validators_reject_non_ascii_digits():
    _clean, errors = imp.validate_subject_rows([{"__rownum": 2, "code": "MATH", "name": "Math", "max_points": "²"}])
    assert errors[0]["errors"] == ["max_points must be 1..40"]

    base = {"__rownum": 2, "student_login": "aliyev1", "subject_code": "MATH", "academic_year": "2024-2025",
            "exam_name": "Midterm", "score": "20"}
    _clean, errors = imp.validate_result_rows([dict(base, term="²")])
    assert errors[0]["errors"] == ["term must be integer"]
    _clean, errors = imp.validate_result_rows([dict(base, term="٣")])
    assert errors[0]["errors"] == ["term must be integer"]
    _clean, errors = imp.validate_result_rows([dict(base, pupil_id="²")])
    assert errors[0]["errors"] == ["pupil_id must be integer"]

    row = {"__line": 2, "pupil_id": "5", "major1": "²", "major2": "0",
           "mandatory1": "1", "mandatory2": "1", "mandatory3": "1", "exam_id": "٣"}
    out = imp.validate_paste_row(row)
    assert "major1 must be an integer" in out["errors"]
    assert "exam_id must be a positive integer" in out["errors"]


def test_validate_result_rows_flags_duplicates_in_file():
    base = {"student_login": "aliyev1", "subject_code": "MATH", "academic_year": "2024-2025",
            "term": "1", "exam_name": "Midterm", "exam_date": "2024-10-15"}
    rows = [
        dict(base, __rownum=2, score="20"),
        dict(base, __rownum=3, score="25"),
        dict(base, __rownum=4, subject_code="PHY", score="25"),
    ]

    clean, errors = imp.validate_result_rows(rows)

    assert [c["__row"] for c in clean] == [2, 4]
    assert errors[0]["row"] == 3
    assert errors[0]["errors"] == [
        "Duplicate result in file: pupil aliyev1, subject MATH, exam Midterm (first seen at row 2)"
    ]


def test_otm_rows_from_sheet_maps_aliases():
    content = ("Pupil ID;ID;Fan 1;Fan 2;Ona tili;Matematika;Tarix;OTM exam id;Note\n"
               ";7;20;15;5;6;7;3;ok\n").encode("utf-8")

    headers, rows = imp.otm_rows_from_sheet(*imp.read_sheet("otm.csv", content))

    assert headers == ["pupil_id", "major1", "major2", "mandatory1", "mandatory2", "mandatory3", "exam_id", "note"]
    assert imp.missing_paste_columns(headers) == []
    assert rows == [{"__line": 2, "pupil_id": "7", "major1": "20", "major2": "15", "mandatory1": "5",
                     "mandatory2": "6", "mandatory3": "7", "exam_id": "3", "note": "ok"}]
    assert imp.validate_paste_row(rows[0])["errors"] == []
