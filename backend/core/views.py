"""
views.py — Derived query views over an AnalysisResult.

Each view is a pure function of (result, subject, school). The selection
ALL_SUBJECTS means "use totals" and ALL_SCHOOLS (or None / "") means "every
school". Single-subject scores read a missing subject as 0 unless a view says
otherwise. Percentages are 0-100, rounded to 2 dp.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from core.grading import (
    ALL_SCHOOLS,
    ALL_SUBJECTS,
    EXCELLENT_RATE_LINE,
    GOOD_RATE_LINE,
    PASS_RATE_LINE,
    SCORE_RATE_BANDS,
    get_band,
)
from core.ranking import rank_by
from core.schemas import AnalysisResult, StudentRecord
from core.stats import format_score, pct, round2

OVERALL_LABEL = "总体"
ALL_SUBJECTS_ROW = "全科"
HIGH_LOW_SHARE = 3  # tenths of a school in each of the high and low groups

# (label, min_rate, max_rate, closed_above)
GRADE_BAND_ROWS = [
    ("优秀", 0.9, 1.0, True),
    ("良好", 0.8, 0.9, False),
    ("中等", 0.6, 0.8, False),
    ("待及格", 0.2, 0.6, False),
    ("及格", 0.6, 1.0, True),
    ("不及格", 0.0, 0.6, False),
    ("低分", 0.0, 0.2, False),
]


# ── Selection Helpers ───────────────────────────────────────────────

def is_all_subjects(subject: Optional[str]) -> bool:
    return not subject or subject == ALL_SUBJECTS


def is_all_schools(school: Optional[str]) -> bool:
    return not school or school == ALL_SCHOOLS


def select_students(result: AnalysisResult, school: Optional[str] = ALL_SCHOOLS) -> List[StudentRecord]:
    if is_all_schools(school):
        return list(result.students)
    return [st for st in result.students if st.school_key == school]


def score_getter(subject: Optional[str]) -> Callable[[StudentRecord], float]:
    if is_all_subjects(subject):
        return lambda st: st.total
    return lambda st: st.score(subject)


def full_score_for(result: AnalysisResult, subject: Optional[str]) -> float:
    if is_all_subjects(subject):
        return result.scheme.total_full_score
    return result.scheme.config_for(subject).full_score


def pass_score_for(result: AnalysisResult, subject: Optional[str]) -> float:
    if is_all_subjects(subject):
        return result.scheme.total_pass_score
    return result.scheme.config_for(subject).pass_score


def _mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if len(values) else 0.0


def _rates(values: Sequence[float], full: float) -> List[float]:
    if full <= 0:
        return [0.0] * len(values)
    return [v / full for v in values]


def _group_students(items: Sequence[Any], key: Callable[[Any], Any]) -> Dict[Any, List[Any]]:
    """Group items by key, keeping first-appearance order of groups and members."""
    groups: Dict[Any, List[Any]] = {}
    for item in items:
        groups.setdefault(key(item), []).append(item)
    return groups


# ── Reference & Comparisons ─────────────────────────────────────────

def reference_average(result: AnalysisResult, subject: Optional[str] = ALL_SUBJECTS) -> float:
    """Mean score over the whole roster, whatever school is selected."""
    getter = score_getter(subject)
    return _mean([getter(st) for st in result.students])


def above_average_rate(average: float, reference: float) -> float:
    if reference == 0:
        return 0.0
    return round2((average - reference) / reference * 100)


def _comparison_row(
    students: Sequence[StudentRecord],
    getter: Callable[[StudentRecord], float],
    full: float,
    reference: float,
) -> Dict[str, Any]:
    values = [getter(st) for st in students]
    rates = _rates(values, full)
    average = _mean(values)
    n = len(values)
    return {
        "student_count": n,
        "average": round2(average),
        "average_rate": round2(average / full * 100) if full > 0 else 0.0,
        "above_average_rate": above_average_rate(average, reference),
        "max": round2(max(values)) if values else 0.0,
        "min": round2(min(values)) if values else 0.0,
        "pass_rate": pct(sum(r >= PASS_RATE_LINE for r in rates), n),
        "excellent_rate": pct(sum(r >= EXCELLENT_RATE_LINE for r in rates), n),
        "good_rate": pct(sum(r >= GOOD_RATE_LINE for r in rates), n),
    }


def _ranked_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ordered = []
    for row, rank in rank_by(rows, lambda r: r["average"]):
        row["rank"] = rank
        ordered.append(row)
    return ordered


def school_comparison(
    result: AnalysisResult,
    subject: Optional[str] = ALL_SUBJECTS,
    school: Optional[str] = ALL_SCHOOLS,
) -> List[Dict[str, Any]]:
    """Per-school figures for the selected subject, best average first."""
    getter = score_getter(subject)
    full = full_score_for(result, subject)
    reference = reference_average(result, subject)

    rows = []
    for school_name, students in _group_students(select_students(result, school), lambda st: st.school_key).items():
        row = {"school": school_name}
        row.update(_comparison_row(students, getter, full, reference))
        rows.append(row)
    return _ranked_rows(rows)


def class_comparison(
    result: AnalysisResult,
    subject: Optional[str] = ALL_SUBJECTS,
    school: Optional[str] = ALL_SCHOOLS,
) -> List[Dict[str, Any]]:
    """Per-class figures for the selected subject, best average first."""
    getter = score_getter(subject)
    full = full_score_for(result, subject)
    reference = reference_average(result, subject)

    groups = _group_students(select_students(result, school), lambda st: (st.school_key, st.class_name))
    rows = []
    for (school_name, class_name), students in groups.items():
        row = {"school": school_name, "class_name": class_name}
        row.update(_comparison_row(students, getter, full, reference))
        rows.append(row)
    return _ranked_rows(rows)


# ── Grade Bands ─────────────────────────────────────────────────────

def _band_values(
    result: AnalysisResult, subject: Optional[str], school: Optional[str], exclude_absent: bool
) -> List[float]:
    getter = score_getter(subject)
    students = select_students(result, school)
    if not exclude_absent:
        return [getter(st) for st in students]
    if not is_all_subjects(subject):
        students = [st for st in students if not st.is_missing(subject)]
    return [v for v in (getter(st) for st in students) if v > 0]


def _in_band(rate: float, low: float, high: float, closed_above: bool) -> bool:
    if closed_above:
        return rate >= low
    return low <= rate < high


def _interval(low: float, high: float, full: float, closed_above: bool) -> str:
    lo = format_score(round(low * full, 1))
    hi = format_score(round(high * full, 1))
    return f"[ {lo} , {hi} ]" if closed_above else f"[ {lo} , {hi} )"


def _rate_interval(low: float, high: float, closed_above: bool) -> str:
    lo, hi = round(low * 100), round(high * 100)
    return f"[{lo}%, {hi}%]" if closed_above else f"[{lo}%, {hi}%)"


def grade_bands(
    result: AnalysisResult,
    subject: Optional[str] = ALL_SUBJECTS,
    school: Optional[str] = ALL_SCHOOLS,
    exclude_absent: bool = True,
) -> Dict[str, Any]:
    """
    Seven-row score-rate band table. With exclude_absent the denominator is
    the students who sat the subject and scored above 0; without it every
    selected student counts.
    """
    full = full_score_for(result, subject)
    values = _band_values(result, subject, school, exclude_absent)
    rates = _rates(values, full)
    n = len(values)

    rows = []
    for label, low, high, closed_above in GRADE_BAND_ROWS:
        count = sum(_in_band(r, low, high, closed_above) for r in rates)
        rows.append({
            "grade": label,
            "rate_range": _rate_interval(low, high, closed_above),
            "score_range": _interval(low, high, full, closed_above),
            "count": count,
            "percentage": pct(count, n),
        })

    return {
        "subject": subject or ALL_SUBJECTS,
        "school": school or ALL_SCHOOLS,
        "full_score": full,
        "total": n,
        "rows": rows,
    }


def grade_band_chart(
    result: AnalysisResult,
    subject: Optional[str] = ALL_SUBJECTS,
    school: Optional[str] = ALL_SCHOOLS,
) -> Dict[str, Any]:
    """Inner ring pass/fail on the pass score, outer ring the five bands."""
    full = full_score_for(result, subject)
    pass_score = pass_score_for(result, subject)
    values = _band_values(result, subject, school, exclude_absent=False)
    n = len(values)

    passed = sum(v >= pass_score for v in values)
    inner = [
        {"name": "及格", "count": passed, "percentage": pct(passed, n)},
        {"name": "不及格", "count": n - passed, "percentage": pct(n - passed, n)},
    ]

    band_counts = {key: 0 for _, key, _ in SCORE_RATE_BANDS}
    for v in values:
        band_counts[get_band(v, full)["key"]] += 1
    outer = [
        {"key": key, "name": label, "count": band_counts[key], "percentage": pct(band_counts[key], n)}
        for _, key, label in SCORE_RATE_BANDS
    ]

    return {"total": n, "pass_score": pass_score, "inner": inner, "outer": outer}


def _grade_counts(values: Sequence[float], full: float) -> Dict[str, Dict[str, Any]]:
    rates = _rates(values, full)
    n = len(values)
    counts = {
        "excellent": sum(r >= EXCELLENT_RATE_LINE for r in rates),
        "good": sum(GOOD_RATE_LINE <= r < EXCELLENT_RATE_LINE for r in rates),
        "medium": sum(PASS_RATE_LINE <= r < GOOD_RATE_LINE for r in rates),
        "pass": sum(r >= PASS_RATE_LINE for r in rates),
        "fail": sum(r < PASS_RATE_LINE for r in rates),
        "low": sum(r < 0.2 for r in rates),
    }
    return {k: {"count": c, "percentage": pct(c, n)} for k, c in counts.items()}


def school_grade_comparison(
    result: AnalysisResult, subject: Optional[str] = ALL_SUBJECTS
) -> List[Dict[str, Any]]:
    """Band counts per school, followed by a 总体 row over the whole roster."""
    getter = score_getter(subject)
    full = full_score_for(result, subject)

    rows = []
    for school_name, students in _group_students(result.students, lambda st: st.school_key).items():
        values = [getter(st) for st in students]
        rows.append({"school": school_name, "student_count": len(values), **_grade_counts(values, full)})

    values = [getter(st) for st in result.students]
    rows.append({"school": OVERALL_LABEL, "student_count": len(values), **_grade_counts(values, full)})
    return rows


# ── High / Low Groups ───────────────────────────────────────────────

def group_size(n: int) -> int:
    """ceil(30% of n) in integer arithmetic."""
    return -(-n * HIGH_LOW_SHARE // 10)


def high_low_comparison(
    result: AnalysisResult,
    subject: Optional[str] = ALL_SUBJECTS,
    school: Optional[str] = ALL_SCHOOLS,
) -> List[Dict[str, Any]]:
    """
    Per school: the top and bottom ceil(30%) of scores and how far their means
    sit from the school average. In schools of fewer than four students the
    two groups overlap.
    """
    getter = score_getter(subject)
    rows = []
    for school_name, students in _group_students(select_students(result, school), lambda st: st.school_key).items():
        scores = sorted((getter(st) for st in students), reverse=True)
        size = group_size(len(scores))
        high, low = scores[:size], scores[-size:]
        average = _mean(scores)
        high_avg, low_avg = _mean(high), _mean(low)
        rows.append({
            "school": school_name,
            "student_count": len(scores),
            "average": round2(average),
            "max": round2(scores[0]),
            "min": round2(scores[-1]),
            "high_count": len(high),
            "low_count": len(low),
            "high_average": round2(high_avg),
            "low_average": round2(low_avg),
            "high_gap": round2(high_avg - average),
            "low_gap": round2(average - low_avg),
        })
    return [row for row, _ in rank_by(rows, lambda r: r["average"])]


# ── Ranking Export ──────────────────────────────────────────────────

def _positional_ranks(values: Sequence[float], positions: Sequence[int], out: List[int]) -> None:
    for pos, rank in rank_by(list(positions), lambda i: values[i]):
        out[pos] = rank


def ranking_export(result: AnalysisResult) -> Dict[str, Any]:
    """
    Ranks recomputed from the roster: by total (joint exam and within school)
    and per scheme subject by score, absent students counting as 0.
    Rows come back in joint-exam rank order.
    """
    students = result.students
    subject_names = result.scheme.subject_names
    school_positions = _group_students(range(len(students)), lambda i: students[i].school_key)

    def ranked(values: List[float]) -> List[Dict[str, Any]]:
        overall = [0] * len(students)
        in_school = [0] * len(students)
        _positional_ranks(values, range(len(students)), overall)
        for positions in school_positions.values():
            _positional_ranks(values, positions, in_school)
        rows = [
            {
                "id": st.id,
                "name": st.name,
                "student_id": st.student_id,
                "school": st.school,
                "class_name": st.class_name,
                "scores": {name: st.score(name) for name in subject_names},
                "score": round2(values[i]),
                "overall_rank": overall[i],
                "school_rank": in_school[i],
            }
            for i, st in enumerate(students)
        ]
        return sorted(rows, key=lambda r: r["overall_rank"])

    return {
        "total": ranked([st.total for st in students]),
        "subjects": {
            name: ranked([st.score(name) for st in students]) for name in subject_names
        },
    }


# ── Overview Tables ─────────────────────────────────────────────────

def _overview_row(
    label: str,
    values: Sequence[float],
    joint_values: Sequence[float],
    full: float,
    pass_score: float,
) -> Dict[str, Any]:
    rates = _rates(values, full)
    n = len(values)
    average = _mean(values)
    joint_average = _mean(joint_values)
    return {
        "subject": label,
        "full_score": full,
        "average": round2(average),
        "joint_average": round2(joint_average),
        "max": round2(max(values)) if values else 0.0,
        "min": round2(min(values)) if values else 0.0,
        "good_rate": pct(sum(r >= GOOD_RATE_LINE for r in rates), n),
        "pass_rate": pct(sum(v >= pass_score for v in values), n),
        "low_rate": pct(sum(v < pass_score * 0.2 for v in values), n),
        "above_average_rate": above_average_rate(average, joint_average),
    }


def subject_overview(result: AnalysisResult, school: Optional[str] = ALL_SCHOOLS) -> List[Dict[str, Any]]:
    """One row per scheme subject plus a 全科 row over totals."""
    selected = select_students(result, school)
    rows = []
    for cfg in result.scheme.subjects:
        rows.append(_overview_row(
            cfg.name,
            [st.score(cfg.name) for st in selected],
            [st.score(cfg.name) for st in result.students],
            cfg.full_score,
            cfg.pass_score,
        ))
    rows.append(_overview_row(
        ALL_SUBJECTS_ROW,
        [st.total for st in selected],
        [st.total for st in result.students],
        result.scheme.total_full_score,
        result.scheme.total_pass_score,
    ))
    return rows


def student_table(
    result: AnalysisResult,
    subject: Optional[str] = ALL_SUBJECTS,
    school: Optional[str] = ALL_SCHOOLS,
) -> List[StudentRecord]:
    """
    Filtered student listing. For a single subject, students marked absent
    from it are dropped and the rest are returned as copies whose total and
    average hold that subject's score (0 when the cell was unusable).
    """
    students = select_students(result, school)
    if is_all_subjects(subject):
        return students
    return [
        st.model_copy(update={"total": st.score(subject), "average": st.score(subject)})
        for st in students
        if not st.is_missing(subject)
    ]


def score_overview(
    result: AnalysisResult,
    subject: Optional[str] = ALL_SUBJECTS,
    school: Optional[str] = ALL_SCHOOLS,
) -> Dict[str, Any]:
    """Participants, full score and min / max / average of the selection."""
    values = [st.total for st in student_table(result, subject, school)]
    return {
        "participants": len(values),
        "full_score": full_score_for(result, subject),
        "min": round2(min(values)) if values else 0.0,
        "max": round2(max(values)) if values else 0.0,
        "average": round2(_mean(values)),
    }


VIEWS: Dict[str, Callable[..., Any]] = {
    "school-comparison": school_comparison,
    "class-comparison": class_comparison,
    "grade-bands": grade_bands,
    "grade-band-chart": grade_band_chart,
    "school-grade-comparison": lambda result, subject=ALL_SUBJECTS, school=None: school_grade_comparison(result, subject),
    "high-low": high_low_comparison,
    "ranking": lambda result, subject=None, school=None: ranking_export(result),
    "subject-overview": lambda result, subject=None, school=ALL_SCHOOLS: subject_overview(result, school),
    "score-overview": score_overview,
    "student-table": student_table,
}
