"""
Tests for core/views.py — comparisons, grade bands, high/low groups, ranking export.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core.grading import ALL_SCHOOLS, ALL_SUBJECTS, GradingScheme, ScoreConfig, default_scheme
from core.parser import parse_roster, read_grid
from core.schemas import StudentRecord
from core.stats import analyze
from core.views import (
    VIEWS,
    class_comparison,
    grade_band_chart,
    grade_bands,
    group_size,
    high_low_comparison,
    ranking_export,
    reference_average,
    school_comparison,
    school_grade_comparison,
    score_overview,
    student_table,
    subject_overview,
)

SAMPLE_CSV = os.path.join(os.path.dirname(__file__), "..", "sample_data", "sample_joint_exam.csv")


def student(sid, school, class_name, **scores):
    missing = {k: True for k, v in scores.items() if v is None}
    subjects = {k: (0.0 if v is None else float(v)) for k, v in scores.items()}
    total = sum(subjects.values())
    return StudentRecord(
        id=sid,
        name=f"S{sid}",
        school=school,
        class_name=class_name,
        subjects=subjects,
        missing_subjects=missing,
        total=total,
        average=round(total / len(subjects), 2) if subjects else 0.0,
    )


@pytest.fixture
def scheme():
    return GradingScheme(subjects=[
        ScoreConfig(name="Math", full_score=100, pass_score=60, excellent_score=90),
        ScoreConfig(name="English", full_score=100, pass_score=60, excellent_score=90),
    ])


@pytest.fixture
def result(scheme):
    roster = [
        student("1", "一中", "1班", Math=95, English=80),
        student("2", "一中", "1班", Math=85, English=70),
        student("3", "一中", "2班", Math=55, English=None),
        student("4", "二中", "1班", Math=70, English=60),
        student("5", "二中", "1班", Math=15, English=40),
    ]
    return analyze(roster, scheme)


@pytest.fixture
def sample_result():
    return analyze(parse_roster(read_grid(SAMPLE_CSV)), default_scheme())


class TestComparisons:
    """School and class comparison regrouping."""

    def test_reference_average_is_full_roster(self, result):
        assert reference_average(result, "Math") == pytest.approx(64.0)

    def test_school_comparison_rows(self, result):
        rows = school_comparison(result, "Math")
        assert [r["school"] for r in rows] == ["一中", "二中"]
        first = rows[0]
        assert first["student_count"] == 3
        assert first["average"] == 78.33
        assert first["max"] == 95.0
        assert first["min"] == 55.0
        assert first["pass_rate"] == 66.67
        assert first["excellent_rate"] == 33.33
        assert first["good_rate"] == 66.67
        assert first["rank"] == 1

    def test_above_average_rate_uses_full_roster(self, result):
        rows = school_comparison(result, "Math", school="二中")
        assert len(rows) == 1
        # (42.5 - 64) / 64 * 100
        assert rows[0]["above_average_rate"] == -33.59

    def test_above_average_rate_zero_when_equal(self):
        roster = [student("1", "一中", "1班", Math=80), student("2", "二中", "1班", Math=80)]
        res = analyze(roster, GradingScheme())
        rows = school_comparison(res, "Math", school="一中")
        assert rows[0]["above_average_rate"] == 0.0

    def test_total_selection_uses_summed_full_score(self, result):
        rows = school_comparison(result, ALL_SUBJECTS)
        first = rows[0]
        # 一中 totals 175, 155, 55 over a 200 full score
        assert first["average"] == 128.33
        assert first["average_rate"] == 64.17

    def test_missing_counts_as_zero(self, result):
        rows = school_comparison(result, "English", school="一中")
        assert rows[0]["student_count"] == 3
        assert rows[0]["min"] == 0.0

    def test_class_comparison(self, result):
        rows = class_comparison(result, "Math")
        keys = [(r["school"], r["class_name"]) for r in rows]
        assert keys == [("一中", "1班"), ("一中", "2班"), ("二中", "1班")]
        assert rows[0]["average"] == 90.0
        assert [r["rank"] for r in rows] == [1, 2, 3]

    def test_class_comparison_school_filter(self, result):
        rows = class_comparison(result, "Math", school="二中")
        assert [r["class_name"] for r in rows] == ["1班"]


class TestGradeBands:
    """Seven-row band table and the two-ring chart."""

    def test_band_rows(self, result):
        table = grade_bands(result, "Math")
        counts = {r["grade"]: r["count"] for r in table["rows"]}
        assert table["total"] == 5
        assert counts == {
            "优秀": 1, "良好": 1, "中等": 1, "待及格": 1,
            "及格": 3, "不及格": 2, "低分": 1,
        }

    def test_intervals(self, result):
        rows = grade_bands(result, "Math")["rows"]
        assert rows[0]["score_range"] == "[ 90 , 100 ]"
        assert rows[1]["score_range"] == "[ 80 , 90 )"
        assert rows[0]["rate_range"] == "[90%, 100%]"

    def test_table_excludes_absent_and_zero(self, result):
        table = grade_bands(result, "English")
        assert table["total"] == 4

    def test_chart_denominator_includes_everyone(self, result):
        table = grade_bands(result, "English", exclude_absent=False)
        assert table["total"] == 5
        low = [r for r in table["rows"] if r["grade"] == "低分"][0]
        assert low["count"] == 1

    def test_band_chart(self, result):
        chart = grade_band_chart(result, "Math")
        inner = {r["name"]: r["count"] for r in chart["inner"]}
        outer = {r["key"]: r["count"] for r in chart["outer"]}
        assert inner == {"及格": 3, "不及格": 2}
        assert outer == {"excellent": 1, "good": 1, "medium": 1, "pending": 1, "low": 1}
        assert chart["total"] == 5

    def test_school_grade_comparison(self, result):
        rows = school_grade_comparison(result, "Math")
        assert [r["school"] for r in rows] == ["一中", "二中", "总体"]
        assert rows[0]["excellent"]["count"] == 1
        assert rows[1]["low"]["count"] == 1
        assert rows[2]["pass"]["count"] == 3
        assert rows[2]["fail"]["percentage"] == 40.0


class TestHighLow:
    """ceil(30%) groups per school."""

    @pytest.mark.parametrize("n,size", [(1, 1), (2, 1), (3, 1), (4, 2), (10, 3), (11, 4)])
    def test_group_size(self, n, size):
        assert group_size(n) == size

    def test_groups(self, result):
        rows = high_low_comparison(result, "Math")
        first = rows[0]
        assert first["school"] == "一中"
        assert first["high_count"] == 1
        assert first["high_average"] == 95.0
        assert first["low_average"] == 55.0
        assert first["high_gap"] == 16.67
        assert first["low_gap"] == 23.33

    def test_overlap_preserved_for_single_student(self):
        res = analyze([student("1", "一中", "1班", Math=70)], GradingScheme())
        row = high_low_comparison(res, "Math")[0]
        assert row["high_average"] == row["low_average"] == 70.0
        assert row["high_gap"] == 0.0 and row["low_gap"] == 0.0


class TestRankingExport:
    """Recomputed ranks agree with the parser for students who sat the subject."""

    def test_total_ranks(self, result):
        rows = ranking_export(result)["total"]
        assert [r["score"] for r in rows] == [175.0, 155.0, 130.0, 55.0, 55.0]
        assert [r["overall_rank"] for r in rows] == [1, 2, 3, 4, 4]
        by_id = {r["id"]: r for r in rows}
        assert by_id["4"]["school_rank"] == 1
        assert by_id["5"]["school_rank"] == 2

    def test_subject_sheets_follow_scheme(self, result):
        export = ranking_export(result)
        assert list(export["subjects"]) == ["Math", "English"]
        english = {r["id"]: r for r in export["subjects"]["English"]}
        assert english["3"]["score"] == 0.0
        assert english["3"]["overall_rank"] == 5

    def test_agrees_with_parser_ranks(self, sample_result):
        export = ranking_export(sample_result)
        by_id = {st.id: st for st in sample_result.students}
        for name, rows in export["subjects"].items():
            for row in rows:
                st = by_id[row["id"]]
                if st.is_missing(name) or name not in st.subject_ranks:
                    continue
                assert row["overall_rank"] == st.subject_ranks[name].overall_rank
                assert row["school_rank"] == st.subject_ranks[name].school_rank


class TestOverviews:
    """All-subjects table, score overview and student listing."""

    def test_subject_overview(self, result):
        rows = subject_overview(result, school="一中")
        assert [r["subject"] for r in rows] == ["Math", "English", "全科"]
        math = rows[0]
        assert math["average"] == 78.33
        assert math["joint_average"] == 64.0
        assert math["good_rate"] == 66.67
        assert math["pass_rate"] == 66.67
        assert math["low_rate"] == 0.0

    def test_subject_overview_low_rate(self, result):
        rows = subject_overview(result)
        assert rows[0]["low_rate"] == 0.0
        # absent student reads as 0 < 60 * 0.2
        assert rows[1]["low_rate"] == 20.0

    def test_student_table_single_subject(self, result):
        rows = student_table(result, "English")
        assert [st.id for st in rows] == ["1", "2", "4", "5"]
        assert rows[0].total == 80.0
        assert rows[0].average == 80.0
        assert result.students[0].total == 175.0

    def test_student_table_keeps_unusable_cells_as_zero(self, scheme):
        roster = [
            student("1", "一中", "1班", Math=80, English=70),
            student("2", "一中", "1班", Math=90),
            student("3", "一中", "1班", Math=60, English=None),
        ]
        rows = student_table(analyze(roster, scheme), "English")
        assert [st.id for st in rows] == ["1", "2"]
        assert rows[1].total == 0.0

    def test_student_table_all(self, result):
        assert len(student_table(result, ALL_SUBJECTS, ALL_SCHOOLS)) == 5
        assert len(student_table(result, ALL_SUBJECTS, "二中")) == 2

    def test_score_overview(self, result):
        ov = score_overview(result, "English", "一中")
        assert ov == {"participants": 2, "full_score": 100, "min": 70.0, "max": 80.0, "average": 75.0}

    def test_score_overview_empty_selection(self, result):
        ov = score_overview(result, "Math", "三中")
        assert ov["participants"] == 0
        assert ov["average"] == 0.0

    def test_view_registry(self, sample_result):
        for name, view in VIEWS.items():
            assert view(sample_result, subject=ALL_SUBJECTS, school=ALL_SCHOOLS) is not None
