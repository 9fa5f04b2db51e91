"""
Score statistics and OTM scoring helpers.

Pure functions used by the admin panel for class reports, the dashboard,
pupil analytics and the OTM workflow. Nothing here touches the database.
"""

import math
import re
from datetime import date

# Thresholds on the 40-point exam scale.
PASS_THRESHOLD = 24.0
GOOD_THRESHOLD = 30.0
EXCELLENT_THRESHOLD = 35.0

DASH = '—'


def fmt1(value):
    if value is None or value == '':
        return DASH
    return f'{float(value):.1f}'


def fmt2(value):
    if value is None or value == '':
        return DASH
    return f'{float(value):.2f}'


def fmt_pct(value):
    if value is None or value == '':
        return DASH
    return f'{float(value):.1f}%'


def fmt_score(value):
    """Drop the trailing .0 on whole scores."""
    if value is None:
        return DASH
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return f'{value:.1f}'


def mean(values):
    values = [float(v) for v in values]
    if not values:
        return None
    return sum(values) / len(values)


def median(values):
    values = sorted(float(v) for v in values)
    n = len(values)
    if not n:
        return None
    mid = n // 2
    if n % 2 == 1:
        return values[mid]
    return (values[mid - 1] + values[mid]) / 2.0


def stddev_samp(values):
    values = [float(v) for v in values]
    n = len(values)
    if n < 2:
        return None
    avg = sum(values) / n
    return math.sqrt(sum((v - avg) ** 2 for v in values) / (n - 1))


def stddev_pop(values):
    values = [float(v) for v in values]
    if not values:
        return None
    avg = sum(values) / len(values)
    return math.sqrt(sum((v - avg) ** 2 for v in values) / len(values))


def skewness(values):
    """Moment coefficient of skewness; None when it is undefined."""
    values = [float(v) for v in values]
    n = len(values)
    if n < 3:
        return None
    sd = stddev_pop(values)
    if not sd:
        return None
    avg = sum(values) / n
    return sum((v - avg) ** 3 for v in values) / n / sd ** 3


def skew_direction(skew):
    if skew is None:
        return DASH
    if skew <= -0.35:
        return 'Failure tail'
    if skew >= 0.35:
        return 'Top-heavy tail'
    return 'Balanced'


def middle_state(lower_share, middle_share):
    """Return (label, collapse) comparing the weak band with the middle band."""
    if lower_share is None or middle_share is None:
        return DASH, None
    collapse = lower_share - middle_share
    if collapse >= 15:
        return 'Middle collapse', collapse
    if collapse <= -10:
        return 'Middle lift', collapse
    return 'Middle balanced', collapse


def distribution_risk_badge(weak_share, elite_share, skew):
    """Return (css_class, label) for the distribution shape of a score slice."""
    weak = weak_share if weak_share is not None else 0.0
    elite = elite_share if elite_share is not None else 0.0
    if weak >= 35 or (skew is not None and skew <= -0.45):
        return 'danger', 'High risk'
    if weak >= 20 or (skew is not None and skew <= -0.20):
        return 'warning', 'Watch'
    if elite >= 20 and weak <= 12:
        return 'success', 'Strong'
    return 'secondary', 'Stable'


def delta_badge(delta):
    """Return (css_class, label) for a change against the previous exam."""
    if delta is None:
        return 'light', DASH
    if abs(delta) < 0.0001:
        return 'secondary', '0.0'
    if delta > 0:
        return 'success', '+' + fmt1(delta)
    return 'danger', fmt1(delta)


def score_badge_class(avg, pass_mark=PASS_THRESHOLD, good=GOOD_THRESHOLD, excellent=EXCELLENT_THRESHOLD):
    if avg is None:
        return 'secondary'
    if avg >= excellent:
        return 'success'
    if avg >= good:
        return 'primary'
    if avg >= pass_mark:
        return 'warning'
    return 'danger'


def score_band(score):
    if score < PASS_THRESHOLD:
        return 'needs_support'
    if score < GOOD_THRESHOLD:
        return 'pass_only'
    if score < EXCELLENT_THRESHOLD:
        return 'good'
    return 'excellent'


def extract_grade(class_code, grade_lookup=None):
    """Grade from the class registry when known, else from the leading digits."""
    code = (class_code or '').strip()
    if not code:
        return None
    if grade_lookup and code.upper() in grade_lookup:
        return grade_lookup[code.upper()]
    match = re.match(r'^([0-9]{1,2})', code)
    if not match:
        return None
    return int(match.group(1))


def summarize_scores(values, pass_mark=PASS_THRESHOLD):
    """n / avg / sd / min / max / pass % / median for one list of scores."""
    values = [float(v) for v in values]
    n = len(values)
    if not n:
        return {'n': 0, 'avg': None, 'sd': None, 'min': None, 'max': None,
                'pass': None, 'pass_n': 0, 'median': None}
    pass_n = sum(1 for v in values if v >= pass_mark)
    return {
        'n': n,
        'avg': sum(values) / n,
        'sd': stddev_samp(values),
        'min': min(values),
        'max': max(values),
        'pass': pass_n / n * 100.0,
        'pass_n': pass_n,
        'median': median(values),
    }


def band_shares(values):
    """Percentage of scores in each band plus the distribution shape labels."""
    values = [float(v) for v in values]
    bands = {'needs_support': 0, 'pass_only': 0, 'good': 0, 'excellent': 0}
    for v in values:
        bands[score_band(v)] += 1
    total = len(values)
    shares = {k: (c / total * 100.0 if total else None) for k, c in bands.items()}
    skew = skewness(values)
    middle_label, collapse = middle_state(shares['needs_support'], shares['pass_only'])
    risk_class, risk_label = distribution_risk_badge(shares['needs_support'], shares['excellent'], skew)
    return {
        'counts': bands,
        'total': total,
        'shares': shares,
        'skew': skew,
        'skew_direction': skew_direction(skew),
        'middle_state': middle_label,
        'middle_collapse': collapse,
        'risk_class': risk_class,
        'risk_label': risk_label,
    }


def _exam_sort_key(exam):
    term = exam.get('term')
    exam_date = exam.get('exam_date')
    if isinstance(exam_date, date):
        exam_date = exam_date.isoformat()
    return (
        term is None,
        term if term is not None else 0,
        exam_date is None,
        exam_date or '',
        exam.get('id') or 0,
    )


def order_exams(exams):
    """Term first (nulls last), then date (nulls last), then id."""
    return sorted(exams, key=_exam_sort_key)


def attach_deltas(series):
    """
    Given an ordered list of stat dicts (or None), return the list of deltas
    against the previous non-null average.
    """
    deltas = []
    prev = None
    for item in series:
        avg = item.get('avg') if item else None
        deltas.append(avg - prev if (avg is not None and prev is not None) else None)
        if avg is not None:
            prev = avg
    return deltas


def build_class_report(exams, subjects, score_rows, pass_mark=PASS_THRESHOLD):
    """
    Aggregate raw (exam_id, subject_id, score) rows of one class.

    Returns a dict with the ordered exams, per subject rows (one cell per exam
    with stats and delta), overall per exam stats with deltas, and the mean of
    exam averages for every subject.
    """
    ordered = order_exams(exams)
    by_cell = {}
    by_exam = {}
    for row in score_rows:
        exam_id = int(row['exam_id'])
        subject_id = int(row['subject_id'])
        score = float(row['score'])
        by_cell.setdefault((subject_id, exam_id), []).append(score)
        by_exam.setdefault(exam_id, []).append(score)

    subject_rows = []
    for subject in subjects:
        sid = int(subject['id'])
        cells = []
        for exam in ordered:
            values = by_cell.get((sid, int(exam['id'])))
            cells.append(summarize_scores(values, pass_mark) if values else None)
        deltas = attach_deltas(cells)
        for cell, delta in zip(cells, deltas):
            if cell is not None:
                cell['delta'] = delta
        avgs = [c['avg'] for c in cells if c is not None and c['avg'] is not None]
        subject_rows.append({
            'subject': subject,
            'cells': cells,
            'mean_of_avgs': (sum(avgs) / len(avgs)) if avgs else None,
            'has_data': bool(avgs),
        })

    overall = []
    for exam in ordered:
        values = by_exam.get(int(exam['id']))
        overall.append(summarize_scores(values, pass_mark) if values else None)
    for cell, delta in zip(overall, attach_deltas(overall)):
        if cell is not None:
            cell['delta'] = delta

    return {'exams': ordered, 'subjects': subject_rows, 'overall': overall}


def class_report_csv_rows(report, class_code, academic_year, track):
    """Rows for the class report CSV export."""
    rows = [
        ['Class', class_code, 'Academic year', academic_year, 'Track', track or 'All'],
        [],
        ['Subject', 'Exam', 'Term', 'Exam date', 'N', 'Avg', 'Median', 'SD', 'Min', 'Max', 'Pass %'],
    ]

    def num(value, places):
        return '' if value is None else f'{float(value):.{places}f}'

    for subject_row in report['subjects']:
        for exam, cell in zip(report['exams'], subject_row['cells']):
            if cell is None:
                continue
            exam_date = exam.get('exam_date')
            rows.append([
                subject_row['subject']['name'],
                exam['exam_name'],
                '' if exam.get('term') is None else str(exam['term']),
                '' if not exam_date else str(exam_date),
                str(cell['n']),
                num(cell['avg'], 1),
                num(cell['median'], 1),
                num(cell['sd'], 2),
                num(cell['min'], 1),
                num(cell['max'], 1),
                num(cell['pass'], 1),
            ])
    return rows


# ==================== OTM SCORING ====================

# key, label, question count, weight per correct answer
OTM_SUBJECT_SLOTS = [
    ('major1', 'Major 1', 30, 3.1),
    ('major2', 'Major 2', 30, 2.1),
    ('mandatory_ona_tili', 'Ona tili', 10, 1.1),
    ('mandatory_matematika', 'Matematika', 10, 1.1),
    ('mandatory_uzb_tarix', "O'zbekiston tarixi", 10, 1.1),
]
OTM_SLOT_KEYS = [slot[0] for slot in OTM_SUBJECT_SLOTS]
OTM_KINDS = ('mock', 'repetition')
OTM_GOOD_TOTAL = 120.0
OTM_WARN_TOTAL = 90.0


def otm_slot_max(key):
    for slot_key, _label, questions, weight in OTM_SUBJECT_SLOTS:
        if slot_key == key:
            return round(questions * weight, 2)
    raise KeyError(key)


OTM_MAX_TOTAL = round(sum(q * w for _k, _l, q, w in OTM_SUBJECT_SLOTS), 2)


_UINT_RE = re.compile(r'[0-9]+')


def is_uint(text):
    """ASCII digits only; str.isdigit() also accepts superscripts."""
    return bool(_UINT_RE.fullmatch(text or ''))


def parse_correct_count(raw, maximum):
    """Return (blank, value, error) for a correct-answer count cell."""
    text = str(raw if raw is not None else '').strip()
    if text == '':
        return True, None, None
    if not is_uint(text):
        return False, None, f'must be an integer 0..{maximum}'
    value = int(text)
    if value > maximum:
        return False, None, f'must be between 0 and {maximum}'
    return False, value, None


_PERCENT_RE = re.compile(r'^[0-9]+(?:\.[0-9]{1,2})?$')


def parse_certificate_percent(raw):
    """Return (blank, value, error); comma is accepted as decimal separator."""
    text = str(raw if raw is not None else '').strip().replace(',', '.')
    if text == '':
        return True, None, None
    if not _PERCENT_RE.match(text):
        return False, None, 'must be a number 0..100 (max 2 decimals)'
    value = float(text)
    if value > 100:
        return False, None, 'must be between 0 and 100'
    return False, round(value, 2), None


def compute_otm_scores(correct, percents=None):
    """
    Compute per-subject and total OTM scores.

    ``correct`` maps slot key -> correct answer count (None counts as 0).
    ``percents`` maps slot key -> certificate percent or None.
    Returns a flat dict using the otm_results column names.
    """
    percents = percents or {}
    out = {}
    total = 0.0
    total_with_cert = 0.0
    for key, _label, questions, weight in OTM_SUBJECT_SLOTS:
        count = int(correct.get(key) or 0)
        count = max(0, min(count, questions))
        score = round(count * weight, 2)
        percent = percents.get(key)
        cert_score = None
        if percent is not None:
            cert_score = round(float(percent) / 100.0 * questions * weight, 2)
        out[f'{key}_correct'] = count
        out[f'{key}_score'] = score
        out[f'{key}_certificate_percent'] = percent
        out[f'{key}_certificate_score'] = cert_score
        total += score
        total_with_cert += cert_score if cert_score is not None else score
    out['total_score'] = round(total, 2)
    out['total_score_withcert'] = round(total_with_cert, 2)
    return out


def otm_score_color(total):
    if total is None:
        return 'secondary'
    if total >= OTM_GOOD_TOTAL:
        return 'success'
    if total >= OTM_WARN_TOTAL:
        return 'warning'
    return 'danger'


def has_any_cert(row):
    return any(row.get(f'{key}_certificate_percent') is not None for key in OTM_SLOT_KEYS)


def cert_total(row):
    """Sum of certificate scores, or None when the row has no certificate."""
    values = [row.get(f'{key}_certificate_score') for key in OTM_SLOT_KEYS]
    values = [float(v) for v in values if v is not None]
    if not values:
        return None
    return round(sum(values), 2)


def cert_applied_count(row):
    return sum(1 for key in OTM_SLOT_KEYS if row.get(f'{key}_certificate_percent') is not None)


def otm_effective_total(row):
    value = row.get('total_score_withcert')
    if value is None:
        value = row.get('total_score')
    return float(value) if value is not None else None


def rank_otm_rows(rows):
    """Order by effective total desc, exam total desc, pupil id asc."""
    def key(row):
        effective = otm_effective_total(row)
        total = row.get('total_score')
        return (
            -(effective if effective is not None else -1.0),
            -(float(total) if total is not None else -1.0),
            int(row.get('pupil_id') or 0),
        )
    return sorted(rows, key=key)


def rank_position(rows, pupil_id, key_func):
    """1-based position of pupil_id in rows ordered by key_func, or None."""
    for index, row in enumerate(sorted(rows, key=key_func), start=1):
        if int(row['pupil_id']) == int(pupil_id):
            return index
    return None


def initial(name):
    name = (name or '').strip()
    return name[:1].upper() if name else ''


def major_pair_code(major1_name, major2_name):
    code = initial(major1_name) + initial(major2_name)
    return code or DASH


def otm_exam_label(exam):
    kind = (exam.get('otm_kind') or '').strip()
    kind_label = {'mock': 'Mock', 'repetition': 'Repetition'}.get(kind, kind.capitalize())
    year = exam.get('year_code') or f"#{exam.get('study_year_id') or 0}"
    exam_date = exam.get('exam_date')
    return ' · '.join([
        str(year),
        kind_label,
        str(exam.get('exam_title') or ''),
        '' if exam_date is None else str(exam_date),
        f"#{int(exam.get('attempt_no') or 1)}",
    ]).strip()


def wm_exam_label(exam):
    cycle = exam.get('cycle_no')
    cycle_text = f'C{int(cycle)}' if cycle is not None else 'C-'
    return f"{exam.get('study_year_code') or ''} | {cycle_text} | {exam.get('exam_name') or ''} ({exam.get('exam_date') or ''})"


# ==================== DASHBOARD AND PUPIL ANALYTICS ====================

def _round_half_up(value):
    return int(math.floor(float(value) + 0.5))


def score_histogram(values, top=40):
    """Counts of integer-rounded scores 0..top."""
    counts = [0] * (top + 1)
    for v in values:
        bucket = min(max(_round_half_up(v), 0), top)
        counts[bucket] += 1
    return [{'score': i, 'count': c} for i, c in enumerate(counts)]


def _exam_chrono_key(row):
    exam_date = row.get('exam_date')
    if isinstance(exam_date, date):
        exam_date = exam_date.isoformat()
    return (exam_date is None, exam_date or '', int(row.get('exam_id') or 0))


def dashboard_summary(rows, pass_mark=PASS_THRESHOLD, min_records=5, trend_limit=12, top_n=10):
    """
    KPIs, score bands, leader tables, subject difficulty, exam trend and the
    histogram for one filtered slice of result rows.
    """
    scores = [float(r['score']) for r in rows]
    kpis = summarize_scores(scores, pass_mark)

    per_pupil = {}
    per_subject = {}
    per_exam = {}
    for r in rows:
        score = float(r['score'])
        pupil = per_pupil.setdefault(int(r['pupil_id']), {
            'pupil_id': int(r['pupil_id']),
            'surname': r.get('surname'),
            'name': r.get('name'),
            'class_code': r.get('class_code'),
            'scores': [],
        })
        pupil['scores'].append(score)
        subject = per_subject.setdefault(int(r['subject_id']), {
            'subject_id': int(r['subject_id']),
            'subject_name': r.get('subject_name'),
            'scores': [],
        })
        subject['scores'].append(score)
        exam = per_exam.setdefault(int(r['exam_id']), {
            'exam_id': int(r['exam_id']),
            'exam_name': r.get('exam_name'),
            'exam_date': r.get('exam_date'),
            'academic_year': r.get('academic_year'),
            'scores': [],
        })
        exam['scores'].append(score)

    pupils = []
    for item in per_pupil.values():
        pupils.append({
            'pupil_id': item['pupil_id'],
            'surname': item['surname'],
            'name': item['name'],
            'class_code': item['class_code'],
            'n': len(item['scores']),
            'avg': mean(item['scores']),
        })
    top = sorted(pupils, key=lambda p: (-p['avg'], p['surname'] or '', p['pupil_id']))[:top_n]
    bottom = sorted(pupils, key=lambda p: (p['avg'], p['surname'] or '', p['pupil_id']))[:top_n]

    difficulty = []
    for item in per_subject.values():
        if len(item['scores']) < min_records:
            continue
        difficulty.append({
            'subject_id': item['subject_id'],
            'subject_name': item['subject_name'],
            'n': len(item['scores']),
            'avg': mean(item['scores']),
            'sd': stddev_pop(item['scores']),
        })
    difficulty.sort(key=lambda s: (s['avg'], s['subject_name'] or ''))

    trend = []
    for item in sorted(per_exam.values(), key=_exam_chrono_key):
        if len(item['scores']) < min_records:
            continue
        trend.append({
            'exam_id': item['exam_id'],
            'exam_name': item['exam_name'],
            'exam_date': item['exam_date'],
            'academic_year': item['academic_year'],
            'n': len(item['scores']),
            'avg': mean(item['scores']),
        })
    trend = trend[-trend_limit:]

    return {
        'kpis': kpis,
        'bands': band_shares(scores),
        'top': top,
        'bottom': bottom,
        'difficulty': difficulty,
        'trend': trend,
        'histogram': score_histogram(scores),
    }


def order_exams_across_years(exams):
    return sorted(exams, key=lambda e: (str(e.get('academic_year') or ''),) + _exam_sort_key(e))


def build_pupil_report(rows):
    """
    Per-exam summary, per-subject latest vs previous, term 1 vs term 2 per
    academic year and KPIs for one pupil's result rows.
    """
    exams = {}
    for r in rows:
        exam_id = int(r['exam_id'])
        exam = exams.setdefault(exam_id, {
            'id': exam_id,
            'exam_name': r.get('exam_name'),
            'exam_date': r.get('exam_date'),
            'term': r.get('term'),
            'academic_year': r.get('academic_year'),
            'scores': {},
        })
        exam['scores'][int(r['subject_id'])] = (r.get('subject_name'), float(r['score']))

    ordered = order_exams_across_years(list(exams.values()))
    exam_rows = []
    for exam in ordered:
        values = [score for _name, score in exam['scores'].values()]
        exam_rows.append({
            'exam': exam,
            'subjects': len(values),
            'avg': mean(values),
            'total': sum(values),
        })

    subjects = {}
    for exam in ordered:
        for subject_id, (subject_name, score) in exam['scores'].items():
            subjects.setdefault(subject_id, {'subject_id': subject_id, 'subject_name': subject_name, 'history': []})
            subjects[subject_id]['history'].append((exam, score))
    subject_rows = []
    for item in sorted(subjects.values(), key=lambda s: s['subject_name'] or ''):
        history = item['history']
        latest_exam, latest = history[-1]
        previous = history[-2][1] if len(history) > 1 else None
        delta = latest - previous if previous is not None else None
        css, label = delta_badge(delta)
        subject_rows.append({
            'subject_id': item['subject_id'],
            'subject_name': item['subject_name'],
            'latest': latest,
            'latest_exam': latest_exam,
            'previous': previous,
            'delta': delta,
            'delta_class': css,
            'delta_label': label,
            'count': len(history),
        })

    terms = {}
    for row in exam_rows:
        exam = row['exam']
        if exam.get('term') not in (1, 2):
            continue
        # exam_rows are ordered, so the last one seen per term is the latest
        terms.setdefault(exam['academic_year'], {})[exam['term']] = row
    term_rows = []
    for year in sorted(terms):
        t1 = terms[year].get(1)
        t2 = terms[year].get(2)
        avg1 = t1['avg'] if t1 else None
        avg2 = t2['avg'] if t2 else None
        term_rows.append({
            'academic_year': year,
            'term1': t1,
            'term2': t2,
            'delta': (avg2 - avg1) if (avg1 is not None and avg2 is not None) else None,
        })

    all_scores = [float(r['score']) for r in rows]
    latest_delta = None
    if len(exam_rows) > 1:
        latest_delta = exam_rows[-1]['avg'] - exam_rows[-2]['avg']
    kpis = {
        'avg': mean(all_scores),
        'median': median(all_scores),
        'subjects': len(subjects),
        'exams': len(exam_rows),
        'latest_delta': latest_delta,
    }
    return {'exams': exam_rows, 'subjects': subject_rows, 'terms': term_rows, 'kpis': kpis}


# ==================== ANALYSIS REPORTS ====================

def clamp_thresholds(pass_mark=None, good=None, excellent=None, top=40.0):
    """Keep pass <= good <= excellent <= top, falling back to the defaults."""
    pass_mark = min(PASS_THRESHOLD if pass_mark is None else pass_mark, top)
    good = min(max(GOOD_THRESHOLD if good is None else good, pass_mark), top)
    excellent = min(max(EXCELLENT_THRESHOLD if excellent is None else excellent, good), top)
    return pass_mark, good, excellent


def _group_scores(rows, key_func, info_func):
    groups = {}
    for r in rows:
        key = key_func(r)
        if key not in groups:
            groups[key] = dict(info_func(r), scores=[])
        groups[key]['scores'].append(float(r['score']))
    return groups


def _slice_stats(item, pass_mark):
    scores = item.pop('scores')
    stats = summarize_scores(scores, pass_mark)
    item.update({
        'n': stats['n'],
        'mean': stats['avg'],
        'median': stats['median'],
        'sd': stddev_pop(scores),
        'min': stats['min'],
        'max': stats['max'],
        'pass_rate': stats['pass'],
    })
    return item


def analysis_report(rows, pass_mark=PASS_THRESHOLD, top_n=10, risk_min_results=6, risk_limit=20,
                    trend_min_results=10, trend_limit=18):
    """
    Full analysis of one filtered slice of result rows: KPIs, subject and
    class summaries, every pupil's summary, top/bottom pupils, at-risk pupils
    and the exam trend.

    A pupil is at risk with at least ``risk_min_results`` results and a mean
    below the pass mark, a zero score or a pass rate under 50%.
    """
    scores = [float(r['score']) for r in rows]
    kpis = summarize_scores(scores, pass_mark)
    kpis['pupils'] = len({r['pupil_id'] for r in rows})
    kpis['subjects'] = len({r['subject_id'] for r in rows})
    kpis['exams'] = len({r['exam_id'] for r in rows})

    subjects = [_slice_stats(item, pass_mark) for item in _group_scores(
        rows,
        lambda r: r['subject_id'],
        lambda r: {'subject_id': r['subject_id'], 'subject_code': r.get('subject_code'),
                   'subject_name': r.get('subject_name')},
    ).values()]
    subjects.sort(key=lambda s: (s['mean'], -(s['sd'] or 0.0), -s['n']))

    classes = [_slice_stats(item, pass_mark) for item in _group_scores(
        rows,
        lambda r: (r.get('class_code'), r.get('track')),
        lambda r: {'class_code': r.get('class_code'), 'track': r.get('track')},
    ).values()]
    classes.sort(key=lambda c: (-c['mean'], -c['pass_rate'], -c['n']))

    pupils = [_slice_stats(item, pass_mark) for item in _group_scores(
        rows,
        lambda r: r['pupil_id'],
        lambda r: {'pupil_id': r['pupil_id'], 'student_login': r.get('student_login'),
                   'surname': r.get('surname'), 'name': r.get('name'),
                   'class_code': r.get('class_code'), 'track': r.get('track')},
    ).values()]
    pupils.sort(key=lambda p: (-p['mean'], -p['n'], p['pupil_id']))
    bottom = sorted(pupils, key=lambda p: (p['mean'], -p['n'], p['pupil_id']))[:top_n]

    at_risk = [
        p for p in pupils
        if p['n'] >= risk_min_results and (p['mean'] < pass_mark or p['min'] <= 0 or p['pass_rate'] < 50)
    ]
    at_risk.sort(key=lambda p: (p['mean'], p['pass_rate'], -p['n']))

    per_exam = _group_scores(
        rows,
        lambda r: r['exam_id'],
        lambda r: {'exam_id': r['exam_id'], 'exam_name': r.get('exam_name'), 'exam_date': r.get('exam_date'),
                   'academic_year': r.get('academic_year'), 'term': r.get('term')},
    )
    trend = [
        _slice_stats(item, pass_mark)
        for item in sorted(per_exam.values(), key=_exam_chrono_key)
        if len(item['scores']) >= trend_min_results
    ][:trend_limit]

    return {
        'kpis': kpis,
        'subjects': subjects,
        'classes': classes,
        'pupils': pupils,
        'top': pupils[:top_n],
        'bottom': bottom,
        'at_risk': at_risk[:risk_limit],
        'trend': trend,
    }


def _num(value, digits=2):
    return '' if value is None else f'{value:.{digits}f}'


def analysis_csv_rows(report, kind):
    """CSV table for the subject, pupils or classes export of an analysis report."""
    if kind == 'subject':
        out = [['subject_code', 'subject_name', 'n', 'mean', 'median', 'stdev', 'pass_rate']]
        for s in report['subjects']:
            out.append([s['subject_code'] or '', s['subject_name'] or '', s['n'], _num(s['mean']),
                        _num(s['median']), _num(s['sd']), _num(s['pass_rate'], 1)])
        return out
    if kind == 'pupils':
        out = [['student_login', 'surname', 'name', 'class_code', 'track', 'n', 'mean', 'min', 'max', 'pass_rate']]
        for p in report['pupils']:
            out.append([p['student_login'] or '', p['surname'] or '', p['name'] or '', p['class_code'] or '',
                        p['track'] or '', p['n'], _num(p['mean']), _num(p['min']), _num(p['max']),
                        _num(p['pass_rate'], 1)])
        return out
    if kind == 'classes':
        out = [['class_code', 'track', 'n', 'mean', 'stdev', 'pass_rate']]
        for c in report['classes']:
            out.append([c['class_code'] or '', c['track'] or '', c['n'], _num(c['mean']), _num(c['sd']),
                        _num(c['pass_rate'], 1)])
        return out
    raise ValueError(f'unknown export kind: {kind}')


# ==================== CLASS TERM MATRIX ====================

def _latest_exam_key(exam):
    exam_date = exam.get('exam_date')
    return (exam_date is not None, str(exam_date or ''), int(exam['id']))


def representative_term_exams(exams):
    """Map term -> its latest exam (dated exams win over undated ones)."""
    chosen = {}
    for exam in exams:
        term = exam.get('term')
        if term is None or int(term) <= 0:
            continue
        term = int(term)
        current = chosen.get(term)
        if current is None or _latest_exam_key(exam) > _latest_exam_key(current):
            chosen[term] = exam
    return dict(sorted(chosen.items()))


TERM_MATRIX_SORTS = ('surname', 'last_total', 'last_delta')


def build_term_matrix(term_exams, pupils, subjects, score_rows, term_mode='all', term_one=0,
                      sort='surname', direction='asc'):
    """
    Pupil x subject x term table for one class.

    ``term_exams`` comes from representative_term_exams. In 'all' mode every
    term is shown with deltas between consecutive terms; in 'one' mode only
    ``term_one`` (or the latest term when it has no exam) is shown. Only
    subjects with at least one score in the selected terms are kept, and a
    missing score counts as 0 in totals.
    """
    if term_mode not in ('all', 'one'):
        term_mode = 'all'
    terms = list(term_exams)
    if not terms:
        return None
    if term_mode == 'one':
        if term_one not in term_exams:
            term_one = terms[-1]
        terms = [term_one]
    last_term = terms[-1]
    prev_term = terms[-2] if term_mode == 'all' and len(terms) > 1 else None

    exam_term = {int(term_exams[t]['id']): t for t in terms}
    scores = {}
    taken = set()
    for r in score_rows:
        term = exam_term.get(int(r['exam_id']))
        if term is None:
            continue
        scores[(int(r['pupil_id']), int(r['subject_id']), term)] = float(r['score'])
        taken.add(int(r['subject_id']))

    shown_subjects = [s for s in subjects if int(s['id']) in taken]
    max_total = sum(float(s.get('max_points') or 0) for s in shown_subjects)

    rows = []
    for pupil in pupils:
        pid = int(pupil['id'])
        cells = []
        for subject in shown_subjects:
            sid = int(subject['id'])
            per_term = []
            previous = None
            for term in terms:
                value = scores.get((pid, sid, term))
                delta = None
                if term_mode == 'all' and value is not None and previous is not None:
                    delta = value - previous
                per_term.append({'term': term, 'score': value, 'delta': delta})
                if value is not None:
                    previous = value
            cells.append(per_term)
        totals = {t: sum(scores.get((pid, int(s['id']), t), 0.0) for s in shown_subjects) for t in terms}
        last_delta = totals[last_term] - totals[prev_term] if prev_term is not None else None
        rows.append({'pupil': pupil, 'cells': cells, 'totals': totals, 'last_delta': last_delta})

    if sort == 'last_total' or (sort == 'last_delta' and prev_term is None):
        rows.sort(key=lambda row: (row['totals'][last_term], int(row['pupil']['id'])))
    elif sort == 'last_delta':
        rows.sort(key=lambda row: (row['last_delta'], int(row['pupil']['id'])))
    else:
        rows.sort(key=lambda row: (
            ' '.join(str(row['pupil'].get(k) or '') for k in ('surname', 'name', 'middle_name')).strip().lower(),
            int(row['pupil']['id']),
        ))
    if direction == 'desc':
        rows.reverse()

    class_avg = {}
    class_median = {}
    for term in terms:
        values = [row['totals'][term] for row in rows]
        class_avg[term] = mean(values)
        class_median[term] = median(values)
    avg_delta = None
    if prev_term is not None and rows:
        avg_delta = class_avg[last_term] - class_avg[prev_term]

    return {
        'term_mode': term_mode,
        'terms': terms,
        'term_one': term_one if term_mode == 'one' else None,
        'last_term': last_term,
        'prev_term': prev_term,
        'term_exams': term_exams,
        'subjects': shown_subjects,
        'max_total': max_total,
        'rows': rows,
        'class_avg': class_avg,
        'class_median': class_median,
        'avg_delta': avg_delta,
    }


# ==================== OTM GRID ROWS ====================

def evaluate_major_pair(raw1, raw2, valid_ids):
    """
    Return (status, major1_id, major2_id, errors) for one row of the majors
    grid. status is 'blank', 'error' or 'ok'.
    """
    text1 = str(raw1 or '').strip()
    text2 = str(raw2 or '').strip()
    if not text1 and not text2:
        return 'blank', None, None, []
    if not text1 or not text2:
        return 'error', None, None, ['Select both majors or leave both empty.']
    errors = []
    id1 = int(text1) if is_uint(text1) else 0
    id2 = int(text2) if is_uint(text2) else 0
    if id1 not in valid_ids:
        errors.append('Major 1 is not a valid OTM subject.')
    if id2 not in valid_ids:
        errors.append('Major 2 is not a valid OTM subject.')
    if not errors and id1 == id2:
        errors.append('Major 1 and Major 2 must be different.')
    if errors:
        return 'error', None, None, errors
    return 'ok', id1, id2, []


def evaluate_otm_entry(raw, major1_id, major2_id, major_active=True):
    """
    Classify one pupil row of the OTM entry grid.

    ``raw`` maps slot key -> {'correct': text, 'cert': text}. Returns
    (status, scores, errors) where status is one of 'blank', 'no_majors',
    'invalid_majors', 'error' or 'ok' and scores is the computed column dict.
    """
    values = [str((raw.get(key) or {}).get(field) or '').strip()
              for key in OTM_SLOT_KEYS for field in ('correct', 'cert')]
    if not any(values):
        return 'blank', None, {}
    if not major_active or not major1_id or not major2_id:
        return 'no_majors', None, {}
    if int(major1_id) == int(major2_id):
        return 'invalid_majors', None, {}

    errors = {}
    correct = {}
    percents = {}
    for key, label, questions, _weight in OTM_SUBJECT_SLOTS:
        cell = raw.get(key) or {}
        _blank, count, error = parse_correct_count(cell.get('correct'), questions)
        if error:
            errors[f'{key}_correct'] = f'{label}: {error}'
        correct[key] = count or 0
        _blank, percent, error = parse_certificate_percent(cell.get('cert'))
        if error:
            errors[f'{key}_cert'] = f'{label} certificate: {error}'
        percents[key] = percent
    if errors:
        return 'error', None, errors
    return 'ok', compute_otm_scores(correct, percents), {}


_WM_SCORE_RE = re.compile(r'^[0-9]+(?:\.[0-9]{1,2})?$')


def parse_wm_score(raw, max_points):
    """Return (blank, value, error) for a WM score cell; comma is accepted."""
    text = str(raw if raw is not None else '').strip().replace(',', '.')
    if text == '':
        return True, None, None
    if not _WM_SCORE_RE.match(text):
        return False, None, f'must be a number 0..{max_points} (max 2 decimals)'
    value = float(text)
    if value > float(max_points):
        return False, None, f'must be between 0 and {max_points}'
    return False, round(value, 2), None
