"""
Tests for core/parser.py — sheet decoding, column detection, roster parsing.
"""

import os
import sys
import tempfile

import pandas as pd
import pytest

# Ensure backend/ is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core.parser import (
    detect_columns,
    parse_roster,
    parse_score_cell,
    read_grid,
    validate_grid,
)

SAMPLE_CSV = os.path.join(os.path.dirname(__file__), "..", "sample_data", "sample_joint_exam.csv")

HEADERS = ["学校", "考号", "班级", "姓名", "语文", "数学", "总分", "校内名次", "联考名次"]


def _by_name(students):
    return {st.name: st for st in students}


class TestDetectColumns:
    """Header keyword matching for roles and subjects."""

    def test_chinese_headers(self):
        layout = detect_columns(HEADERS)
        assert layout.index("school") == 0
        assert layout.index("student_id") == 1
        assert layout.index("class_name") == 2
        assert layout.index("name") == 3
        assert layout.index("school_rank") == 7
        assert layout.index("overall_rank") == 8

    def test_subjects_exclude_reserved_headers(self):
        layout = detect_columns(HEADERS)
        assert [name for name, _ in layout.subjects] == ["语文", "数学"]

    def test_alternative_keywords(self):
        layout = detect_columns(["学生姓名", "学号", "班别", "校名", "校内排名", "总排名", "物理"])
        assert layout.index("name") == 0
        assert layout.index("student_id") == 1
        assert layout.index("class_name") == 2
        assert layout.index("school") == 3
        assert layout.index("school_rank") == 4
        assert layout.index("overall_rank") == 5
        assert layout.subjects == [("物理", 6)]

    def test_english_headers(self):
        layout = detect_columns(["School", "Student ID", "Class", "Name", "Math", "Science", "Total", "School Rank"])
        assert layout.index("school") == 0
        assert layout.index("student_id") == 1
        assert layout.index("class_name") == 2
        assert layout.index("name") == 3
        assert layout.index("school_rank") == 7
        assert [name for name, _ in layout.subjects] == ["Math", "Science"]

    def test_first_matching_column_wins(self):
        layout = detect_columns(["姓名", "名字", "语文"])
        assert layout.index("name") == 0

    def test_unresolved_roles_are_none(self):
        layout = detect_columns(["姓名", "语文"])
        assert layout.index("school") is None
        assert "school" in layout.unresolved
        assert "name" not in layout.unresolved

    def test_non_string_headers_ignored(self):
        layout = detect_columns(["姓名", None, 2024, "数学"])
        assert layout.subjects == [("数学", 3)]

    def test_keywords_match_inside_longer_headers(self):
        layout = detect_columns(["Student Name", "Classroom", "Midterm", "Math"])
        assert layout.index("name") == 0
        assert layout.index("class_name") == 1
        # "Midterm" contains "id" and is not a subject
        assert layout.subjects == [("Math", 3)]


class TestParseScoreCell:
    """Cell-level score parsing."""

    def test_number(self):
        assert parse_score_cell(88) == (88.0, False)
        assert parse_score_cell(72.5) == (72.5, False)

    @pytest.mark.parametrize("marker", ["缺考", "作弊", "违纪", "", "-", "  缺考  "])
    def test_missing_markers(self, marker):
        assert parse_score_cell(marker) == (0.0, True)

    def test_blank_cell_is_missing(self):
        assert parse_score_cell(None) == (0.0, True)

    def test_leading_number_string(self):
        assert parse_score_cell("85分") == (85.0, False)
        assert parse_score_cell(" 90.5 ") == (90.5, False)

    def test_unparseable_string_is_zero(self):
        assert parse_score_cell("absent") == (0.0, False)

    def test_negative_dropped(self):
        assert parse_score_cell(-5) is None
        assert parse_score_cell("-3") is None

    def test_nan_dropped(self):
        assert parse_score_cell(float("nan")) is None


class TestParseRoster:
    """Row processing, totals and ranks."""

    def test_fewer_than_two_rows(self):
        assert parse_roster([]) == []
        assert parse_roster([HEADERS]) == []

    def test_basic_row(self):
        rows = [
            ["姓名", "学校", "班级", "考号", "语文", "数学"],
            ["张三", "一中", "1班", 1001.0, 90, "80"],
        ]
        st = parse_roster(rows)[0]
        assert st.name == "张三"
        assert st.student_id == "1001"
        assert st.subjects == {"语文": 90.0, "数学": 80.0}
        assert st.total == 170.0
        assert st.average == 85.0
        assert st.id == "1"

    def test_total_equals_sum_of_subjects(self):
        rows = [
            ["姓名", "语文", "数学", "英语"],
            ["甲", 91.5, "缺考", 77],
            ["乙", 60, 70, "abc"],
        ]
        for st in parse_roster(rows):
            assert st.total == sum(st.subjects.values())

    def test_missing_subject_scores_zero_and_marked(self):
        rows = [["姓名", "数学"], ["甲", "缺考"]]
        st = parse_roster(rows)[0]
        assert st.subjects["数学"] == 0.0
        assert st.missing_subjects["数学"] is True

    def test_negative_score_left_out(self):
        rows = [["姓名", "语文", "数学"], ["甲", 90, -1]]
        st = parse_roster(rows)[0]
        assert "数学" not in st.subjects
        assert st.average == 90.0

    def test_skips_empty_and_nameless_rows(self):
        rows = [
            ["姓名", "语文"],
            [],
            [None, None],
            ["", 90],
            ["乙", 80],
        ]
        students = parse_roster(rows)
        assert [st.name for st in students] == ["乙"]
        assert students[0].id == "4"

    def test_rank_columns_kept(self):
        rows = [
            ["姓名", "学校", "语文", "校内名次", "联考名次"],
            ["甲", "一中", 60, 2, "5"],
            ["乙", "一中", 90, 1, 3],
        ]
        students = _by_name(parse_roster(rows))
        assert students["甲"].school_rank == 2
        assert students["甲"].overall_rank == 5
        assert students["甲"].rank == 5
        assert students["乙"].overall_rank == 3

    def test_rank_fallback_orders_by_average(self):
        rows = [
            ["姓名", "语文"],
            ["甲", 60],
            ["乙", 90],
            ["丙", 90],
        ]
        students = parse_roster(rows)
        assert [st.name for st in students] == ["乙", "丙", "甲"]
        assert [st.overall_rank for st in students] == [1, 1, 3]
        assert all(st.rank == st.overall_rank for st in students)
        assert [st.school_rank for st in students] == [1, 1, 3]

    def test_subject_ranks_exclude_missing(self):
        rows = [
            ["姓名", "学校", "数学"],
            ["甲", "一中", 90],
            ["乙", "一中", 90],
            ["丙", "二中", 60],
            ["丁", "二中", "缺考"],
        ]
        students = _by_name(parse_roster(rows))
        assert students["甲"].subject_ranks["数学"].overall_rank == 1
        assert students["乙"].subject_ranks["数学"].overall_rank == 1
        assert students["丙"].subject_ranks["数学"].overall_rank == 3
        assert students["丙"].subject_ranks["数学"].school_rank == 1
        assert "数学" not in students["丁"].subject_ranks

    def test_blank_school_groups_as_unknown(self):
        rows = [
            ["姓名", "学校", "数学"],
            ["甲", "", 70],
            ["乙", None, 80],
        ]
        students = _by_name(parse_roster(rows))
        assert students["乙"].subject_ranks["数学"].school_rank == 1
        assert students["甲"].subject_ranks["数学"].school_rank == 2

    def test_unresolved_columns_degrade(self):
        rows = [["姓名", "语文"], ["甲", 88]]
        st = parse_roster(rows)[0]
        assert st.school == ""
        assert st.class_name == ""
        assert st.student_id == ""


class TestReadGrid:
    """Sheet decoding via pandas."""

    def test_sample_csv(self):
        rows = read_grid(SAMPLE_CSV)
        assert rows[0][:4] == ["学校", "考号", "班级", "姓名"]
        assert len(rows) == 13

    def test_blank_cells_become_none(self):
        rows = read_grid(SAMPLE_CSV)
        assert rows[1][-1] is None

    def test_sample_csv_parses(self):
        students = parse_roster(read_grid(SAMPLE_CSV))
        assert len(students) == 12
        by_name = _by_name(students)
        assert by_name["刘洋"].missing_subjects["数学"] is True
        assert by_name["郑浩"].missing_subjects["化学"] is True
        assert by_name["张伟"].student_id == "20250101"
        assert students[0].overall_rank == 1

    def test_xlsx_first_sheet(self):
        df = pd.DataFrame([["姓名", "数学"], ["甲", 95], ["乙", None]])
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            path = f.name
        try:
            df.to_excel(path, header=False, index=False)
            rows = read_grid(path)
            assert rows[0] == ["姓名", "数学"]
            assert rows[2][1] is None
        finally:
            os.unlink(path)

    def test_unsupported_extension(self):
        with pytest.raises(ValueError):
            read_grid("scores.txt")


class TestValidateGrid:
    """Non-fatal issue reporting."""

    def test_empty_grid(self):
        issues = validate_grid([["姓名"]])
        assert issues[0]["type"] == "empty_data"
        assert issues[0]["severity"] == "critical"

    def test_missing_name_is_critical(self):
        issues = validate_grid([["学校", "语文"], ["一中", 90]])
        name_issue = [i for i in issues if i["type"] == "missing_column" and "'name'" in i["message"]]
        assert name_issue and name_issue[0]["severity"] == "critical"

    def test_invalid_and_negative_scores(self):
        rows = [["姓名", "语文"], ["甲", "abc"], ["乙", -2]]
        types = {i["type"] for i in validate_grid(rows)}
        assert "invalid_scores" in types
        assert "negative_scores" in types

    def test_duplicate_ids(self):
        rows = [["姓名", "学校", "考号", "语文"], ["甲", "一中", 1, 90], ["乙", "一中", 1, 80]]
        assert any(i["type"] == "duplicates" for i in validate_grid(rows))

    def test_clean_sample_has_no_score_issues(self):
        types = {i["type"] for i in validate_grid(read_grid(SAMPLE_CSV))}
        assert "invalid_scores" not in types
        assert "duplicates" not in types
