"""
parser.py — Spreadsheet ingestion and roster parsing.

Supports:
- CSV, Excel (.xlsx, .xls) and ODS files, first usable sheet
- Header keyword matching for identity and rank columns
- Every other header treated as a subject column
- Absent / disqualified markers (缺考, 作弊, 违纪, blank, "-")
- Per-subject ranks, overall and within each school
"""

import logging
import math
import numbers
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from core.ranking import rank_by
from core.schemas import StudentRecord, SubjectRank
from core.stats import round2

logger = logging.getLogger(__name__)

SAMPLE_DATA_DIR = Path(__file__).parent.parent / "sample_data"


@dataclass(frozen=True)
class RoleMatcher:
    """A column role and the header keywords that identify it."""

    role: str
    keywords: Tuple[str, ...]
    excludes: Tuple[str, ...] = ()

    def matches(self, header: Any) -> bool:
        if not isinstance(header, str):
            return False
        if any(_header_contains(header, kw) for kw in self.excludes):
            return False
        return any(_header_contains(header, kw) for kw in self.keywords)


# Applied in order; for each role the first matching column wins.
ROLE_MATCHERS: Tuple[RoleMatcher, ...] = (
    RoleMatcher("name", ("姓名", "名字", "学生姓名", "name"), excludes=("school", "class")),
    RoleMatcher("student_id", ("学号", "学生编号", "考号", "student id", "student_id", "exam no")),
    RoleMatcher("class_name", ("班级", "班别", "class"), excludes=("rank",)),
    RoleMatcher("school", ("学校", "校名", "school"), excludes=("rank",)),
    RoleMatcher("school_rank", ("校内名次", "校内排名", "school rank")),
    RoleMatcher("overall_rank", ("联考名次", "联考排名", "总排名", "overall rank")),
)

# Headers containing any of these are never subjects.
NON_SUBJECT_KEYWORDS = (
    "姓名", "名字", "学号", "考号", "学生编号", "班级", "班别", "学校", "校名",
    "名次", "排名", "总分", "平均分",
    "name", "id", "class", "school", "rank", "total", "average",
)

MISSING_MARKERS = frozenset({"缺考", "作弊", "违纪", "", "-"})

_LEADING_NUMBER = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_LEADING_INT = re.compile(r"^[+-]?\d+")


@dataclass
class ColumnLayout:
    """Column index per role (None when unresolved) and the subject columns."""

    roles: Dict[str, Optional[int]] = field(default_factory=dict)
    subjects: List[Tuple[str, int]] = field(default_factory=list)

    def index(self, role: str) -> Optional[int]:
        return self.roles.get(role)

    @property
    def unresolved(self) -> List[str]:
        return [role for role, idx in self.roles.items() if idx is None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roles": dict(self.roles),
            "subjects": [name for name, _ in self.subjects],
        }


# ── Helpers ─────────────────────────────────────────────────────────

def _header_contains(header: str, keyword: str) -> bool:
    """Case-insensitive substring match."""
    return keyword.lower() in header.lower()


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Number) and not isinstance(value, bool)


def _cell(row: Sequence[Any], idx: Optional[int]) -> Any:
    if idx is None or idx >= len(row):
        return None
    return row[idx]


def _cell_text(value: Any) -> str:
    """Render an identity cell as text; 1001.0 becomes '1001'."""
    if _is_blank(value):
        return ""
    if _is_number(value):
        as_float = float(value)
        if math.isfinite(as_float) and as_float.is_integer():
            return str(int(as_float))
    return str(value).strip()


def _leading_float(text: str) -> float:
    match = _LEADING_NUMBER.match(text)
    return float(match.group(0)) if match else 0.0


def _parse_int(value: Any) -> int:
    """Integer from a rank cell; 0 when there is none."""
    if _is_blank(value):
        return 0
    if _is_number(value):
        as_float = float(value)
        return int(as_float) if math.isfinite(as_float) else 0
    match = _LEADING_INT.match(str(value).strip())
    return int(match.group(0)) if match else 0


def parse_score_cell(raw: Any) -> Optional[Tuple[float, bool]]:
    """
    Parse a subject cell into (score, missing).

    Returns None when the value is negative or not a finite number; such
    cells are left out of the student's subject map altogether.
    """
    if raw is None:
        return 0.0, True

    if _is_number(raw):
        score = float(raw)
    elif isinstance(raw, str):
        text = raw.strip()
        if text in MISSING_MARKERS:
            return 0.0, True
        score = _leading_float(text)
    else:
        score = _leading_float(str(raw).strip())

    if not math.isfinite(score) or score < 0:
        return None
    return score, False


def detect_columns(
    headers: Sequence[Any],
    matchers: Sequence[RoleMatcher] = ROLE_MATCHERS,
) -> ColumnLayout:
    """Resolve role columns and subject columns from the header row."""
    layout = ColumnLayout()
    for matcher in matchers:
        layout.roles[matcher.role] = next(
            (idx for idx, header in enumerate(headers) if matcher.matches(header)),
            None,
        )

    role_indices = {idx for idx in layout.roles.values() if idx is not None}
    for idx, header in enumerate(headers):
        if not isinstance(header, str) or idx in role_indices:
            continue
        if not header.strip():
            continue
        if any(_header_contains(header, kw) for kw in NON_SUBJECT_KEYWORDS):
            continue
        layout.subjects.append((header.strip(), idx))

    return layout


# ── File Ingestion ──────────────────────────────────────────────────

def _frame_to_grid(df: pd.DataFrame) -> List[List[Any]]:
    cleaned = df.astype(object).where(pd.notna(df), None)
    return cleaned.values.tolist()


def read_grid(file_path: str) -> List[List[Any]]:
    """
    Decode a score sheet into a 2-D grid (row 0 = headers).
    For workbooks the first sheet with a header and at least one data row
    is used.
    """
    path = Path(file_path)
    ext = path.suffix.lower()

    if ext == ".csv":
        df = pd.read_csv(file_path, header=None)
        return _frame_to_grid(df)

    if ext in (".xlsx", ".xls", ".ods"):
        engine = {".xlsx": "openpyxl", ".xls": "xlrd", ".ods": "odf"}[ext]
        with pd.ExcelFile(file_path, engine=engine) as xls:
            for sheet_name in xls.sheet_names:
                df = pd.read_excel(xls, sheet_name=sheet_name, header=None)
                if len(df) >= 2:
                    logger.info("Reading sheet '%s' from %s", sheet_name, path.name)
                    return _frame_to_grid(df)
        raise ValueError(f"No sheet with a header and data rows found in {path.name}.")

    raise ValueError(f"Unsupported file type: {ext}")


# ── Roster Parsing ──────────────────────────────────────────────────

def _assign_subject_ranks(students: List[StudentRecord]) -> None:
    subject_names = list(dict.fromkeys(s for st in students for s in st.subjects))
    for subject in subject_names:
        takers = [st for st in students if not st.is_missing(subject)]
        for st, rank in rank_by(takers, lambda st: st.score(subject)):
            st.subject_ranks[subject] = SubjectRank(overall_rank=rank)

        by_school: Dict[str, List[StudentRecord]] = {}
        for st in takers:
            by_school.setdefault(st.school_key, []).append(st)
        for school_students in by_school.values():
            for st, rank in rank_by(school_students, lambda st: st.score(subject)):
                st.subject_ranks[subject].school_rank = rank


def _fill_missing_ranks(students: List[StudentRecord]) -> List[StudentRecord]:
    """Rank by average when the sheet carried no usable rank columns."""
    if students and all(st.overall_rank == 0 for st in students):
        ranked = rank_by(students, lambda st: st.average)
        for st, rank in ranked:
            st.overall_rank = rank
            st.rank = rank
        students = [st for st, _ in ranked]

    if students and all(st.school_rank == 0 for st in students):
        by_school: Dict[str, List[StudentRecord]] = {}
        for st in students:
            by_school.setdefault(st.school_key, []).append(st)
        for school_students in by_school.values():
            for st, rank in rank_by(school_students, lambda st: st.average):
                st.school_rank = rank

    return students


def parse_roster(
    rows: Sequence[Sequence[Any]],
    matchers: Sequence[RoleMatcher] = ROLE_MATCHERS,
) -> List[StudentRecord]:
    """Turn a header row plus data rows into ranked student records."""
    if rows is None or len(rows) < 2:
        return []

    layout = detect_columns(list(rows[0]), matchers)
    logger.info(
        "Detected columns %s; subjects: %s",
        {role: idx for role, idx in layout.roles.items() if idx is not None},
        [name for name, _ in layout.subjects],
    )
    for role in layout.unresolved:
        logger.warning("No column found for '%s'; using empty defaults.", role)

    students: List[StudentRecord] = []
    for row_no, row in enumerate(rows[1:], start=1):
        if not row or all(_is_blank(c) for c in row):
            continue
        name = _cell_text(_cell(row, layout.index("name")))
        if not name:
            continue

        subjects: Dict[str, float] = {}
        missing: Dict[str, bool] = {}
        for subject, idx in layout.subjects:
            parsed = parse_score_cell(_cell(row, idx))
            if parsed is None:
                continue
            subjects[subject], missing[subject] = parsed

        total = sum(subjects.values())
        average = total / len(subjects) if subjects else 0.0
        overall_rank = _parse_int(_cell(row, layout.index("overall_rank")))

        students.append(StudentRecord(
            id=str(row_no),
            name=name,
            student_id=_cell_text(_cell(row, layout.index("student_id"))),
            class_name=_cell_text(_cell(row, layout.index("class_name"))),
            school=_cell_text(_cell(row, layout.index("school"))),
            subjects=subjects,
            missing_subjects=missing,
            total=total,
            average=round2(average),
            school_rank=_parse_int(_cell(row, layout.index("school_rank"))),
            overall_rank=overall_rank,
            rank=overall_rank,
        ))

    _assign_subject_ranks(students)
    students = _fill_missing_ranks(students)
    logger.info("Parsed %d students from %d data rows.", len(students), len(rows) - 1)
    return students


# ── Validation ──────────────────────────────────────────────────────

def validate_grid(rows: Sequence[Sequence[Any]]) -> List[Dict]:
    """
    Report problems found in a raw grid. Purely informational: parse_roster
    degrades gracefully on every issue listed here.
    """
    issues: List[Dict] = []

    if rows is None or len(rows) < 2:
        issues.append({
            "type": "empty_data",
            "severity": "critical",
            "message": "The sheet needs a header row and at least one data row.",
        })
        return issues

    layout = detect_columns(list(rows[0]))
    for role in layout.unresolved:
        issues.append({
            "type": "missing_column",
            "severity": "critical" if role == "name" else "warning",
            "message": f"No column found for '{role}'.",
        })

    if not layout.subjects:
        issues.append({
            "type": "no_subjects",
            "severity": "critical",
            "message": "No subject columns were recognised in the header row.",
        })

    invalid_count = 0
    negative_count = 0
    for row in rows[1:]:
        if not row:
            continue
        for _, idx in layout.subjects:
            raw = _cell(row, idx)
            if isinstance(raw, str) and raw.strip() not in MISSING_MARKERS:
                if not _LEADING_NUMBER.match(raw.strip()):
                    invalid_count += 1
            parsed = parse_score_cell(raw)
            if parsed is None:
                negative_count += 1
    if invalid_count > 0:
        issues.append({
            "type": "invalid_scores",
            "severity": "warning",
            "message": f"{invalid_count} score cells are not numbers and were read as 0.",
        })
    if negative_count > 0:
        issues.append({
            "type": "negative_scores",
            "severity": "warning",
            "message": f"{negative_count} score cells are negative or not finite and were skipped.",
        })

    id_idx = layout.index("student_id")
    school_idx = layout.index("school")
    if id_idx is not None:
        seen = set()
        dupe_count = 0
        for row in rows[1:]:
            if not row:
                continue
            sid = _cell_text(_cell(row, id_idx))
            if not sid:
                continue
            key = (_cell_text(_cell(row, school_idx)), sid)
            if key in seen:
                dupe_count += 1
            seen.add(key)
        if dupe_count > 0:
            issues.append({
                "type": "duplicates",
                "severity": "warning",
                "message": f"{dupe_count} rows repeat a student ID within the same school.",
            })

    return issues
