"""
stats.py — Aggregation engine.

Computes, from a parsed roster and a grading scheme:
- Per-subject stats (average, max, min, pass/excellent rates, distribution)
- Per-class and per-school aggregations over total scores, with ranks
- Joint-exam overall figures

Every stored average and rate is rounded to 2 decimal places.
Rates are percentages (0-100).
"""

import math
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from core.grading import GradingScheme, ScoreConfig
from core.ranking import rank_by
from core.schemas import (
    AnalysisResult,
    ClassStats,
    DistributionBucket,
    OverallStats,
    SchoolStats,
    StudentRecord,
    SubjectStats,
)


# ── Helpers ─────────────────────────────────────────────────────────

def _safe_float(val) -> Optional[float]:
    """Convert to float rounded half-up to 2 dp, or return None."""
    try:
        v = float(val)
    except (TypeError, ValueError):
        return None
    if np.isnan(v) or np.isinf(v):
        return None
    # Halves round towards +inf: 80.125 -> 80.13, -0.125 -> -0.12
    return math.floor(v * 100 + 0.5) / 100


def round2(val) -> float:
    v = _safe_float(val)
    return 0.0 if v is None else v


def pct(count: int, total: int) -> float:
    """Percentage of total, 0 for an empty denominator."""
    if total <= 0:
        return 0.0
    return round2(count / total * 100)


def format_score(value: float) -> str:
    """Render 72.0 as '72' and 72.5 as '72.5'."""
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return f"{value:g}"


def subject_order(students: Sequence[StudentRecord]) -> List[str]:
    """Union of subject names across the roster, in first-appearance order."""
    return list(dict.fromkeys(s for st in students for s in st.subjects))


# ── Subject Statistics ──────────────────────────────────────────────

def compute_distribution(scores: Sequence[float], cfg: ScoreConfig) -> List[DistributionBucket]:
    """
    Four buckets: fail [0, pass), pass [pass, mid), good [mid, excellent),
    excellent [excellent, full], where mid = floor((pass + excellent) / 2).
    """
    if len(scores) == 0:
        return []

    pass_s, exc_s, full_s = cfg.pass_score, cfg.excellent_score, cfg.full_score
    mid = math.floor((pass_s + exc_s) / 2)
    arr = np.asarray(scores, dtype=float)

    buckets = [
        (0, pass_s, f"0-{format_score(pass_s - 1)}分(不及格)"),
        (pass_s, mid, f"{format_score(pass_s)}-{format_score(mid - 1)}分(及格)"),
        (mid, exc_s, f"{format_score(mid)}-{format_score(exc_s - 1)}分(良好)"),
        (exc_s, None, f"{format_score(exc_s)}-{format_score(full_s)}分(优秀)"),
    ]

    distribution = []
    for low, high, label in buckets:
        if high is None:
            mask = (arr >= low) & (arr <= full_s)
        else:
            mask = (arr >= low) & (arr < high)
        count = int(mask.sum())
        distribution.append(DistributionBucket(
            range=label,
            count=count,
            percentage=pct(count, len(arr)),
        ))
    return distribution


def compute_subject_stats(
    students: Sequence[StudentRecord], scheme: GradingScheme
) -> List[SubjectStats]:
    results = []
    for subject in subject_order(students):
        scores = [
            st.subjects[subject]
            for st in students
            if subject in st.subjects and not st.is_missing(subject)
        ]
        if not scores:
            results.append(SubjectStats(subject=subject))
            continue

        cfg = scheme.config_for(subject)
        arr = np.asarray(scores, dtype=float)
        results.append(SubjectStats(
            subject=subject,
            count=len(scores),
            average=round2(arr.mean()),
            max=round2(arr.max()),
            min=round2(arr.min()),
            pass_rate=pct(int((arr >= cfg.pass_score).sum()), len(arr)),
            excellent_rate=pct(int((arr >= cfg.excellent_score).sum()), len(arr)),
            distribution=compute_distribution(scores, cfg),
        ))
    return results


# ── Class & School Statistics ───────────────────────────────────────

def _totals_frame(students: Sequence[StudentRecord]) -> pd.DataFrame:
    return pd.DataFrame({
        "school": [st.school_key for st in students],
        "class_name": [st.class_name for st in students],
        "total": [st.total for st in students],
    })


def _group_figures(totals: pd.Series, pass_line: float, excellent_line: float) -> Dict[str, Any]:
    n = len(totals)
    return {
        "student_count": n,
        "average": round2(totals.mean()),
        "pass_rate": pct(int((totals >= pass_line).sum()), n),
        "excellent_rate": pct(int((totals >= excellent_line).sum()), n),
    }


def compute_class_stats(df: pd.DataFrame, scheme: GradingScheme) -> List[ClassStats]:
    """Per-class figures, ordered by average with overall and in-school ranks."""
    pass_line = scheme.total_pass_score
    excellent_line = scheme.total_excellent_score

    classes = [
        ClassStats(
            school=school,
            class_name=class_name,
            **_group_figures(group["total"], pass_line, excellent_line),
        )
        for (school, class_name), group in df.groupby(["school", "class_name"], sort=False)
    ]

    ordered = []
    for cls, rank in rank_by(classes, lambda c: c.average):
        cls.overall_rank = rank
        cls.rank = rank
        ordered.append(cls)

    by_school: Dict[str, List[ClassStats]] = {}
    for cls in ordered:
        by_school.setdefault(cls.school, []).append(cls)
    for school_classes in by_school.values():
        for cls, rank in rank_by(school_classes, lambda c: c.average):
            cls.school_rank = rank

    return ordered


def compute_school_stats(df: pd.DataFrame, scheme: GradingScheme) -> List[SchoolStats]:
    """Per-school figures, ordered and ranked by average."""
    pass_line = scheme.total_pass_score
    excellent_line = scheme.total_excellent_score

    schools = [
        SchoolStats(
            school_name=school,
            class_count=int(group["class_name"].nunique()),
            **_group_figures(group["total"], pass_line, excellent_line),
        )
        for school, group in df.groupby("school", sort=False)
    ]

    ordered = []
    for school, rank in rank_by(schools, lambda s: s.average):
        school.rank = rank
        ordered.append(school)
    return ordered


# ── Analysis Entry Point ────────────────────────────────────────────

def analyze(roster: Sequence[StudentRecord], scheme: Optional[GradingScheme] = None) -> AnalysisResult:
    """
    Aggregate a parsed roster. The roster is copied, never modified, and an
    empty roster yields empty collections with zeroed overall figures.
    """
    scheme = scheme if scheme is not None else GradingScheme()
    students = [st.model_copy(deep=True) for st in roster]

    if not students:
        return AnalysisResult(scheme=scheme)

    df = _totals_frame(students)
    class_stats = compute_class_stats(df, scheme)
    school_stats = compute_school_stats(df, scheme)

    overall = _group_figures(df["total"], scheme.total_pass_score, scheme.total_excellent_score)
    overall_stats = OverallStats(
        total_students=overall["student_count"],
        overall_average=overall["average"],
        overall_pass_rate=overall["pass_rate"],
        overall_excellent_rate=overall["excellent_rate"],
        total_schools=len(school_stats),
        total_classes=len(class_stats),
    )

    return AnalysisResult(
        students=students,
        subject_stats=compute_subject_stats(students, scheme),
        class_stats=class_stats,
        school_stats=school_stats,
        overall_stats=overall_stats,
        scheme=scheme,
    )
