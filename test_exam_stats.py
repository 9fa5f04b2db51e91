from datetime import date

import pytest

import exam_stats as s


def test_summarize_scores_counts_pass_and_sample_sd():
    out = s.summarize_scores([20, 30, 40])
    assert out["n"] == 3
    assert out["avg"] == pytest.approx(30.0)
    assert out["median"] == pytest.approx(30.0)
    assert out["sd"] == pytest.approx(10.0)
    assert out["pass_n"] == 2
    assert out["pass"] == pytest.approx(200 / 3)
    assert out["min"] == 20.0 and out["max"] == 40.0


def test_summarize_scores_empty_slice():
    out = s.summarize_scores([])
    assert out["n"] == 0
    assert out["avg"] is None
    assert out["pass"] is None


def test_single_score_has_no_sample_sd():
    assert s.stddev_samp([12]) is None
    assert s.stddev_pop([12]) == 0.0
    assert s.skewness([1, 1, 1]) is None


def test_class_report_orders_by_term_then_date_and_tracks_deltas():
    exams = [
        {"id": 1, "exam_name": "Spring", "term": 2, "exam_date": "2025-03-01"},
        {"id": 2, "exam_name": "Autumn", "term": 1, "exam_date": "2024-11-01"},
        {"id": 3, "exam_name": "Extra", "term": None, "exam_date": None},
    ]
    subjects = [{"id": 10, "code": "MATH", "name": "Math"}, {"id": 11, "code": "BIO", "name": "Biology"}]
    scores = [
        {"exam_id": 2, "subject_id": 10, "score": 20},
        {"exam_id": 2, "subject_id": 10, "score": 30},
        {"exam_id": 1, "subject_id": 10, "score": 35},
    ]

    report = s.build_class_report(exams, subjects, scores)

    assert [e["id"] for e in report["exams"]] == [2, 1, 3]
    math = report["subjects"][0]
    assert math["cells"][0]["avg"] == pytest.approx(25.0)
    assert math["cells"][0]["delta"] is None
    assert math["cells"][1]["delta"] == pytest.approx(10.0)
    assert math["cells"][2] is None
    assert math["mean_of_avgs"] == pytest.approx(30.0)
    assert report["subjects"][1]["has_data"] is False
    assert report["overall"][1]["delta"] == pytest.approx(10.0)


def test_deltas_skip_exams_without_scores():
    deltas = s.attach_deltas([{"avg": 20.0}, None, {"avg": 26.0}])
    assert deltas == [None, None, pytest.approx(6.0)]


def test_class_report_csv_rows_layout():
    exams = [{"id": 1, "exam_name": "Midterm", "term": 1, "exam_date": date(2025, 10, 1)}]
    subjects = [{"id": 5, "name": "Physics"}]
    report = s.build_class_report(exams, subjects, [{"exam_id": 1, "subject_id": 5, "score": 24}])

    rows = s.class_report_csv_rows(report, "9A", "2025-2026", "")

    assert rows[0] == ["Class", "9A", "Academic year", "2025-2026", "Track", "All"]
    assert rows[1] == []
    assert rows[2][0] == "Subject"
    assert rows[3] == ["Physics", "Midterm", "1", "2025-10-01", "1", "24.0", "24.0", "", "24.0", "24.0", "100.0"]


def test_band_shares_and_risk_badge():
    bands = s.band_shares([10, 12, 15, 25, 36])
    assert bands["counts"] == {"needs_support": 3, "pass_only": 1, "good": 0, "excellent": 1}
    assert bands["shares"]["needs_support"] == pytest.approx(60.0)
    assert bands["risk_label"] == "High risk"


def test_delta_badge_labels():
    assert s.delta_badge(None) == ("light", s.DASH)
    assert s.delta_badge(0.0) == ("secondary", "0.0")
    assert s.delta_badge(2.3) == ("success", "+2.3")
    assert s.delta_badge(-1.5) == ("danger", "-1.5")


def test_score_histogram_rounds_half_up_and_clamps():
    hist = s.score_histogram([0.4, 0.5, 39.6, 45])
    counts = {h["score"]: h["count"] for h in hist if h["count"]}
    assert counts == {0: 1, 1: 1, 40: 2}
    assert len(hist) == 41


def _result_row(pupil_id, subject_id, exam_id, score, exam_date="2025-01-10"):
    return {
        "pupil_id": pupil_id, "surname": f"S{pupil_id}", "name": "N", "class_code": "9A",
        "subject_id": subject_id, "subject_name": f"Subject {subject_id}",
        "exam_id": exam_id, "exam_name": f"Exam {exam_id}", "exam_date": exam_date,
        "academic_year": "2024-2025", "score": score,
    }


def test_dashboard_summary_respects_minimum_records():
    rows = [_result_row(p, 1, 1, 20 + p) for p in range(1, 6)]
    rows += [_result_row(p, 2, 2, 30, "2025-02-10") for p in range(1, 5)]

    summary = s.dashboard_summary(rows)

    assert summary["kpis"]["n"] == 9
    assert [d["subject_id"] for d in summary["difficulty"]] == [1]
    assert [t["exam_id"] for t in summary["trend"]] == [1]
    assert summary["top"][0]["pupil_id"] in (1, 2, 3, 4, 5)
    assert summary["bottom"][0]["avg"] <= summary["top"][0]["avg"]


def test_pupil_report_compares_latest_with_previous_and_terms():
    base = {"academic_year": "2024-2025"}
    rows = [
        dict(base, exam_id=1, exam_name="T1", term=1, exam_date="2024-10-01", subject_id=1, subject_name="Math", score=20),
        dict(base, exam_id=1, exam_name="T1", term=1, exam_date="2024-10-01", subject_id=2, subject_name="Physics", score=30),
        dict(base, exam_id=2, exam_name="T2", term=2, exam_date="2025-03-01", subject_id=1, subject_name="Math", score=26),
        dict(base, exam_id=2, exam_name="T2", term=2, exam_date="2025-03-01", subject_id=2, subject_name="Physics", score=28),
    ]

    report = s.build_pupil_report(rows)

    assert [r["avg"] for r in report["exams"]] == [pytest.approx(25.0), pytest.approx(27.0)]
    math, physics = report["subjects"]
    assert (math["latest"], math["previous"], math["delta_label"]) == (26.0, 20.0, "+6.0")
    assert physics["delta_class"] == "danger"
    assert report["terms"][0]["delta"] == pytest.approx(2.0)
    assert report["kpis"]["latest_delta"] == pytest.approx(2.0)
    assert report["kpis"]["subjects"] == 2


def test_compute_otm_scores_applies_certificate_percent():
    correct = {"major1": 30, "major2": 20, "mandatory_ona_tili": 10, "mandatory_matematika": 5, "mandatory_uzb_tarix": 0}
    out = s.compute_otm_scores(correct, {"major2": 80})

    assert out["major1_score"] == pytest.approx(93.0)
    assert out["major2_score"] == pytest.approx(42.0)
    assert out["major2_certificate_score"] == pytest.approx(50.4)
    assert out["major1_certificate_score"] is None
    assert out["total_score"] == pytest.approx(151.5)
    assert out["total_score_withcert"] == pytest.approx(159.9)


def test_otm_max_total_matches_slot_weights():
    assert s.OTM_MAX_TOTAL == pytest.approx(189.0)
    assert s.otm_slot_max("major2") == pytest.approx(63.0)


def _raw(**cells):
    raw = {key: {"correct": "", "cert": ""} for key in s.OTM_SLOT_KEYS}
    for key, value in cells.items():
        raw[key] = value
    return raw


def test_evaluate_otm_entry_statuses():
    assert s.evaluate_otm_entry(_raw(), 1, 2)[0] == "blank"
    filled = _raw(major1={"correct": "25", "cert": ""})
    assert s.evaluate_otm_entry(filled, None, 2)[0] == "no_majors"
    assert s.evaluate_otm_entry(filled, 1, 2, major_active=False)[0] == "no_majors"
    assert s.evaluate_otm_entry(filled, 3, 3)[0] == "invalid_majors"


def test_evaluate_otm_entry_reports_cell_errors():
    raw = _raw(major1={"correct": "31", "cert": ""}, major2={"correct": "10", "cert": "101"})
    status, scores, errors = s.evaluate_otm_entry(raw, 1, 2)
    assert status == "error"
    assert scores is None
    assert set(errors) == {"major1_correct", "major2_cert"}


def test_evaluate_otm_entry_accepts_comma_percent():
    raw = _raw(major1={"correct": "25", "cert": "75,5"}, mandatory_ona_tili={"correct": "8", "cert": ""})
    status, scores, errors = s.evaluate_otm_entry(raw, 1, 2)
    assert status == "ok"
    assert errors == {}
    assert scores["major1_certificate_percent"] == pytest.approx(75.5)
    assert scores["major2_correct"] == 0
    assert scores["total_score"] == pytest.approx(25 * 3.1 + 8 * 1.1)


def test_evaluate_major_pair():
    valid = {1, 2}
    assert s.evaluate_major_pair("", "", valid)[0] == "blank"
    assert s.evaluate_major_pair("1", "", valid)[3] == ["Select both majors or leave both empty."]
    assert s.evaluate_major_pair("2", "2", valid)[3] == ["Major 1 and Major 2 must be different."]
    assert s.evaluate_major_pair("1", "9", valid)[0] == "error"
    assert s.evaluate_major_pair("1", "2", valid) == ("ok", 1, 2, [])


def test_parse_wm_score():
    assert s.parse_wm_score("", 100) == (True, None, None)
    assert s.parse_wm_score("12,5", 100) == (False, 12.5, None)
    assert s.parse_wm_score("101", 100)[2] == "must be between 0 and 100"
    assert s.parse_wm_score("1.234", 100)[2] is not None
    assert s.parse_wm_score("-3", 100)[2] is not None


def test_rank_otm_rows_uses_certificate_total_then_exam_total_then_id():
    rows = [
        {"pupil_id": 3, "total_score": 100, "total_score_withcert": None},
        {"pupil_id": 1, "total_score": 90, "total_score_withcert": 110},
        {"pupil_id": 2, "total_score": 100, "total_score_withcert": None},
    ]
    assert [r["pupil_id"] for r in s.rank_otm_rows(rows)] == [1, 2, 3]
    assert s.rank_position(rows, 2, lambda r: -r["total_score"]) in (1, 2)


def test_certificate_aggregates():
    row = {"major1_certificate_percent": 90, "major1_certificate_score": 83.7,
           "mandatory_matematika_certificate_percent": 50, "mandatory_matematika_certificate_score": 5.5}
    assert s.has_any_cert(row) is True
    assert s.cert_applied_count(row) == 2
    assert s.cert_total(row) == pytest.approx(89.2)
    assert s.cert_total({}) is None


def test_labels():
    assert s.major_pair_code("Matematika", "fizika") == "MF"
    assert s.major_pair_code(None, None) == s.DASH
    exam = {"year_code": "2025/2026", "otm_kind": "mock", "exam_title": "March", "exam_date": "2026-03-01", "attempt_no": 2}
    assert s.otm_exam_label(exam) == "2025/2026 · Mock · March · 2026-03-01 · #2"
    wm = {"study_year_code": "2025/2026", "cycle_no": 3, "exam_name": "Weekly", "exam_date": "2025-10-04"}
    assert s.wm_exam_label(wm) == "2025/2026 | C3 | Weekly (2025-10-04)"
    assert s.otm_score_color(130) == "success"
    assert s.otm_score_color(95) == "warning"
    assert s.otm_score_color(None) == "secondary"


def test_extract_grade_prefers_registry():
    assert s.extract_grade("10B") == 10
    assert s.extract_grade(" 9a ", {"9A": 8}) == 8
    assert s.extract_grade("LAB") is None
    assert s.extract_grade("") is None


def test_counts_reject_non_ascii_digits():
    assert s.is_uint("17")
    assert not s.is_uint("²")
    assert not s.is_uint("٣")
    assert not s.is_uint("")

    status, scores, errors = s.evaluate_otm_entry(_raw(major1={"correct": "²", "cert": ""}), 1, 2)
    assert status == "error"
    assert scores is None
    assert "major1_correct" in errors

    status, _m1, _m2, errors = s.evaluate_major_pair("²", "1", {1, 2})
    assert status == "error"
    assert errors == ["Major 1 is not a valid OTM subject."]


def test_percent_and_wm_score_reject_non_ascii_digits():
    assert s.parse_certificate_percent("٧٥")[2] is not None
    assert s.parse_wm_score("١٢", 100)[2] is not None


def test_median_even_count_and_skewness():
    assert s.median([10, 20, 30, 40]) == pytest.approx(25.0)
    assert s.median([]) is None
    assert s.skewness([1, 2, 3]) == pytest.approx(0.0)
    assert s.skewness([1, 1, 1, 10]) > 0


def test_middle_state_thresholds():
    assert s.middle_state(None, 10) == (s.DASH, None)
    assert s.middle_state(40, 25)[0] == "Middle collapse"
    assert s.middle_state(20, 30)[0] == "Middle lift"
    assert s.middle_state(20, 25) == ("Middle balanced", -5)
    assert s.skew_direction(-0.5) == "Failure tail"
    assert s.skew_direction(0.1) == "Balanced"


def _analysis_rows():
    def row(pupil_id, login, class_code, track, subject_id, code, name, score):
        return {"pupil_id": pupil_id, "student_login": login, "surname": login.title(), "name": "X",
                "class_code": class_code, "track": track, "subject_id": subject_id, "subject_code": code,
                "subject_name": name, "exam_id": 1, "exam_name": "Midterm", "exam_date": date(2024, 10, 15),
                "academic_year": "2024-2025", "term": 1, "score": score}

    return [
        row(1, "a1", "9A", "Aniq fanlar", 3, "MATH", "Math", 30),
        row(1, "a1", "9A", "Aniq fanlar", 4, "PHY", "Physics", 20),
        row(2, "b2", "9A", "Aniq fanlar", 3, "MATH", "Math", 10),
        row(2, "b2", "9A", "Aniq fanlar", 4, "PHY", "Physics", 0),
        row(3, "c3", "10B", "Tabiiy fanlar", 3, "MATH", "Math", 36),
    ]


def test_clamp_thresholds_keeps_order():
    assert s.clamp_thresholds() == (24.0, 30.0, 35.0)
    assert s.clamp_thresholds(30, 20, None) == (30, 30, 35.0)
    assert s.clamp_thresholds(50, None, None) == (40.0, 40.0, 40.0)
    assert s.clamp_thresholds(20, 25, 22) == (20, 25, 25)


def test_analysis_report_slices():
    report = s.analysis_report(_analysis_rows(), risk_min_results=2, trend_min_results=5)

    assert report["kpis"]["n"] == 5
    assert report["kpis"]["avg"] == pytest.approx(19.2)
    assert (report["kpis"]["pupils"], report["kpis"]["subjects"], report["kpis"]["exams"]) == (3, 2, 1)

    assert [x["subject_code"] for x in report["subjects"]] == ["PHY", "MATH"]
    physics = report["subjects"][0]
    assert physics["mean"] == pytest.approx(10.0)
    assert physics["sd"] == pytest.approx(10.0)
    assert physics["pass_rate"] == pytest.approx(0.0)

    assert [(c["class_code"], c["n"]) for c in report["classes"]] == [("10B", 1), ("9A", 4)]
    assert [p["pupil_id"] for p in report["top"]] == [3, 1, 2]
    assert [p["pupil_id"] for p in report["bottom"]] == [2, 1, 3]
    assert [p["pupil_id"] for p in report["at_risk"]] == [2]
    assert len(report["trend"]) == 1
    assert report["trend"][0]["n"] == 5


def test_analysis_report_empty_and_trend_minimum():
    report = s.analysis_report([])
    assert report["kpis"]["n"] == 0
    assert report["subjects"] == [] and report["pupils"] == []
    assert s.analysis_report(_analysis_rows())["trend"] == []


def test_analysis_csv_rows():
    report = s.analysis_report(_analysis_rows())

    subject = s.analysis_csv_rows(report, "subject")
    assert subject[0] == ["subject_code", "subject_name", "n", "mean", "median", "stdev", "pass_rate"]
    assert subject[1] == ["PHY", "Physics", 2, "10.00", "10.00", "10.00", "0.0"]
    assert subject[2][:5] == ["MATH", "Math", 3, "25.33", "30.00"]
    assert subject[2][6] == "66.7"

    pupils = s.analysis_csv_rows(report, "pupils")
    assert pupils[1] == ["c3", "C3", "X", "10B", "Tabiiy fanlar", 1, "36.00", "36.00", "36.00", "100.0"]

    classes = s.analysis_csv_rows(report, "classes")
    assert classes[1] == ["10B", "Tabiiy fanlar", 1, "36.00", "0.00", "100.0"]

    with pytest.raises(ValueError):
        s.analysis_csv_rows(report, "raw")


def test_representative_term_exams_picks_latest_per_term():
    exams = [
        {"id": 1, "term": 1, "exam_date": date(2024, 10, 1)},
        {"id": 2, "term": 1, "exam_date": date(2024, 12, 1)},
        {"id": 3, "term": 2, "exam_date": None},
        {"id": 4, "term": 2, "exam_date": date(2025, 2, 1)},
        {"id": 5, "term": None, "exam_date": date(2025, 3, 1)},
        {"id": 6, "term": 0, "exam_date": date(2025, 3, 1)},
        {"id": 7, "term": 3, "exam_date": None},
        {"id": 8, "term": 3, "exam_date": None},
    ]

    chosen = s.representative_term_exams(exams)

    assert list(chosen) == [1, 2, 3]
    assert [e["id"] for e in chosen.values()] == [2, 4, 8]


def _matrix_inputs():
    term_exams = {1: {"id": 2, "term": 1}, 2: {"id": 4, "term": 2}}
    pupils = [{"id": 1, "surname": "Karimova", "name": "Nodira"}, {"id": 2, "surname": "Aliyev", "name": "Vali"}]
    subjects = [
        {"id": 3, "code": "MATH", "name": "Math", "max_points": 40},
        {"id": 5, "code": "CHEM", "name": "Chemistry", "max_points": 40},
        {"id": 4, "code": "PHY", "name": "Physics", "max_points": 40},
    ]
    scores = [
        {"pupil_id": 1, "subject_id": 3, "exam_id": 2, "score": 20},
        {"pupil_id": 1, "subject_id": 3, "exam_id": 4, "score": 30},
        {"pupil_id": 1, "subject_id": 4, "exam_id": 2, "score": 10},
        {"pupil_id": 2, "subject_id": 3, "exam_id": 2, "score": 25},
        {"pupil_id": 2, "subject_id": 3, "exam_id": 4, "score": 20},
        {"pupil_id": 2, "subject_id": 5, "exam_id": 99, "score": 30},
    ]
    return term_exams, pupils, subjects, scores


def test_build_term_matrix_all_terms():
    matrix = s.build_term_matrix(*_matrix_inputs())

    assert matrix["terms"] == [1, 2]
    assert (matrix["last_term"], matrix["prev_term"]) == (2, 1)
    assert [x["code"] for x in matrix["subjects"]] == ["MATH", "PHY"]
    assert matrix["max_total"] == pytest.approx(80.0)
    assert [row["pupil"]["id"] for row in matrix["rows"]] == [2, 1]

    karimova = matrix["rows"][1]
    assert karimova["cells"][0] == [{"term": 1, "score": 20.0, "delta": None},
                                    {"term": 2, "score": 30.0, "delta": 10.0}]
    assert karimova["cells"][1][1] == {"term": 2, "score": None, "delta": None}
    assert karimova["totals"] == {1: 30.0, 2: 30.0}
    assert karimova["last_delta"] == pytest.approx(0.0)
    assert matrix["class_avg"] == {1: pytest.approx(27.5), 2: pytest.approx(25.0)}
    assert matrix["avg_delta"] == pytest.approx(-2.5)


def test_build_term_matrix_sorting_and_single_term():
    inputs = _matrix_inputs()

    by_delta = s.build_term_matrix(*inputs, sort="last_delta")
    assert [row["pupil"]["id"] for row in by_delta["rows"]] == [2, 1]
    by_delta_desc = s.build_term_matrix(*inputs, sort="last_delta", direction="desc")
    assert [row["pupil"]["id"] for row in by_delta_desc["rows"]] == [1, 2]

    one = s.build_term_matrix(*inputs, term_mode="one", term_one=7, sort="last_delta")
    assert one["terms"] == [2] and one["term_one"] == 2
    assert one["prev_term"] is None and one["avg_delta"] is None
    assert [x["code"] for x in one["subjects"]] == ["MATH"]
    assert [row["pupil"]["id"] for row in one["rows"]] == [2, 1]
    assert one["rows"][0]["last_delta"] is None

    assert s.build_term_matrix({}, [], [], []) is None
