"""
report_builder.py — PDF and Excel report generation.

Generates:
- Analysis workbook  (总体情况, 学生成绩单, 学校对比, 班级统计, 成绩分档统计, 高低分对比分析)
- Ranking workbook   (总排名 plus one {subject}排名 sheet per scheme subject)
- Summary PDF        (overall figures, school/class/subject tables, school average chart)

PDFs are A4 and use the built-in STSong-Light CID font for Chinese text.
"""

import io
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import matplotlib
matplotlib.use("Agg")  # Non-interactive backend for server use
import matplotlib.pyplot as plt
import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils.dataframe import dataframe_to_rows
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm, mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.cidfonts import UnicodeCIDFont
from reportlab.platypus import (
    Image,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from core.grading import ALL_SCHOOLS, ALL_SUBJECTS
from core.schemas import AnalysisResult
from core.views import (
    class_comparison,
    grade_bands,
    high_low_comparison,
    ranking_export,
    school_comparison,
    school_grade_comparison,
    student_table,
    subject_overview,
)

logger = logging.getLogger(__name__)

CJK_FONT = "STSong-Light"
pdfmetrics.registerFont(UnicodeCIDFont(CJK_FONT))


# ── Colour palette ──────────────────────────────────────────────────

BRAND_DARK  = colors.HexColor("#1a1a2e")
BRAND_ACCENT = colors.HexColor("#0f3460")
LIGHT_GREY  = colors.HexColor("#f5f5f5")
WHITE       = colors.white

MPL_PALETTE = ["#0f3460", "#e94560", "#2ecc71", "#f39c12", "#9b59b6", "#1abc9c"]
TAB_COLORS = ["1a1a2e", "0f3460", "e94560", "2ecc71", "f39c12", "9b59b6"]


# ── Helpers ─────────────────────────────────────────────────────────

def _footer(canvas, doc, title: str):
    """Draw report title and date in the page footer."""
    canvas.saveState()
    canvas.setFont(CJK_FONT, 8)
    canvas.setFillColor(colors.grey)
    canvas.drawString(2 * cm, 1.2 * cm, f"{title}  {datetime.now().strftime('%Y-%m-%d %H:%M')}")
    canvas.drawRightString(A4[0] - 2 * cm, 1.2 * cm, f"第 {doc.page} 页")
    canvas.restoreState()


def _chart_to_image(fig, width=15 * cm, height=8 * cm) -> Image:
    """Convert a matplotlib figure to a ReportLab Image."""
    buf = io.BytesIO()
    fig.savefig(buf, format="png", dpi=150, bbox_inches="tight")
    plt.close(fig)
    buf.seek(0)
    return Image(buf, width=width, height=height)


def _pct_text(value: float) -> str:
    return f"{value:.2f}%"


# ── Charts ──────────────────────────────────────────────────────────

def _school_average_chart(result: AnalysisResult) -> Optional[Image]:
    """Bar chart of total-score average per school."""
    if not result.school_stats:
        return None

    names = [s.school_name for s in result.school_stats]
    averages = [s.average for s in result.school_stats]

    # First installed CJK font wins; DejaVu only covers Latin labels.
    plt.rcParams["font.sans-serif"] = ["Noto Sans CJK SC", "SimHei", "WenQuanYi Micro Hei", "DejaVu Sans"]
    plt.rcParams["axes.unicode_minus"] = False

    fig, ax = plt.subplots(figsize=(8, 4))
    bars = ax.bar(range(len(names)), averages, color=[MPL_PALETTE[i % len(MPL_PALETTE)] for i in range(len(names))],
                  edgecolor="white", linewidth=0.5)
    for bar, val in zip(bars, averages):
        ax.text(bar.get_x() + bar.get_width() / 2, bar.get_height(),
                f"{val:.1f}", ha="center", va="bottom", fontsize=8, fontweight="bold")

    ax.set_xticks(range(len(names)))
    ax.set_xticklabels(names, rotation=30, ha="right")
    ax.set_ylabel("Average total", fontsize=10)
    ax.set_title("School averages", fontsize=12, fontweight="bold", pad=12)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    return _chart_to_image(fig)


# ── PDF Helpers ─────────────────────────────────────────────────────

def _styles():
    """Return custom paragraph styles."""
    ss = getSampleStyleSheet()
    return {
        "title": ParagraphStyle(
            "CustomTitle", parent=ss["Title"], fontName=CJK_FONT,
            fontSize=22, leading=28, textColor=BRAND_DARK,
            spaceAfter=6 * mm,
        ),
        "subtitle": ParagraphStyle(
            "CustomSubtitle", parent=ss["Normal"], fontName=CJK_FONT,
            fontSize=12, leading=16, textColor=BRAND_ACCENT, alignment=TA_CENTER,
            spaceAfter=4 * mm,
        ),
        "heading": ParagraphStyle(
            "CustomHeading", parent=ss["Heading2"], fontName=CJK_FONT,
            fontSize=14, leading=18, textColor=BRAND_DARK,
            spaceBefore=8 * mm, spaceAfter=4 * mm,
        ),
        "body": ParagraphStyle(
            "CustomBody", parent=ss["Normal"], fontName=CJK_FONT,
            fontSize=10, leading=14, textColor=colors.black,
            spaceAfter=3 * mm,
        ),
    }


def _make_table(data: List[List], col_widths=None, header_color=BRAND_DARK):
    """Create a styled table."""
    style_cmds = [
        ("BACKGROUND", (0, 0), (-1, 0), header_color),
        ("TEXTCOLOR", (0, 0), (-1, 0), WHITE),
        ("FONTNAME", (0, 0), (-1, -1), CJK_FONT),
        ("FONTSIZE", (0, 0), (-1, 0), 9),
        ("FONTSIZE", (0, 1), (-1, -1), 8),
        ("ALIGN", (0, 0), (-1, -1), "CENTER"),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#cccccc")),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [WHITE, LIGHT_GREY]),
        ("TOPPADDING", (0, 0), (-1, -1), 4),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
    ]
    t = Table(data, colWidths=col_widths, repeatRows=1)
    t.setStyle(TableStyle(style_cmds))
    return t


def generate_summary_pdf(result: AnalysisResult, output_path: str, title: str):
    """Generate the joint-exam summary PDF."""
    st = _styles()
    story = []
    ov = result.overall_stats

    story.append(Paragraph(title, st["title"]))
    story.append(Paragraph(
        f"{result.scheme.grade_level}  {datetime.now().strftime('%Y-%m-%d')}", st["subtitle"]
    ))

    story.append(Paragraph("总体情况", st["heading"]))
    story.append(_make_table([
        ["指标", "数值"],
        ["参考人数", str(ov.total_students)],
        ["学校数", str(ov.total_schools)],
        ["班级数", str(ov.total_classes)],
        ["总分平均分", f"{ov.overall_average:.2f}"],
        ["总分及格率", _pct_text(ov.overall_pass_rate)],
        ["总分优秀率", _pct_text(ov.overall_excellent_rate)],
    ], col_widths=[7 * cm, 6 * cm]))

    chart = _school_average_chart(result)
    if chart is not None:
        story.append(Spacer(1, 5 * mm))
        story.append(chart)

    if result.school_stats:
        story.append(Paragraph("学校统计", st["heading"]))
        rows = [["排名", "学校", "人数", "班级数", "平均分", "及格率", "优秀率"]]
        for s in result.school_stats:
            rows.append([
                str(s.rank), s.school_name, str(s.student_count), str(s.class_count),
                f"{s.average:.2f}", _pct_text(s.pass_rate), _pct_text(s.excellent_rate),
            ])
        story.append(_make_table(rows))

    if result.class_stats:
        story.append(Paragraph("班级统计", st["heading"]))
        rows = [["联考排名", "校内排名", "学校", "班级", "人数", "平均分", "及格率", "优秀率"]]
        for c in result.class_stats:
            rows.append([
                str(c.overall_rank), str(c.school_rank), c.school, c.class_name,
                str(c.student_count), f"{c.average:.2f}",
                _pct_text(c.pass_rate), _pct_text(c.excellent_rate),
            ])
        story.append(_make_table(rows))

    if result.subject_stats:
        story.append(Paragraph("学科统计", st["heading"]))
        rows = [["学科", "人数", "平均分", "最高分", "最低分", "及格率", "优秀率"]]
        for s in result.subject_stats:
            rows.append([
                s.subject, str(s.count), f"{s.average:.2f}", f"{s.max:g}", f"{s.min:g}",
                _pct_text(s.pass_rate), _pct_text(s.excellent_rate),
            ])
        story.append(_make_table(rows))

    doc = SimpleDocTemplate(
        output_path, pagesize=A4,
        leftMargin=1.5 * cm, rightMargin=1.5 * cm,
        topMargin=1.5 * cm, bottomMargin=2 * cm,
    )
    doc.build(
        story,
        onFirstPage=lambda c, d: _footer(c, d, title),
        onLaterPages=lambda c, d: _footer(c, d, title),
    )
    logger.info("Summary PDF written to %s", output_path)


# ── Excel Export ────────────────────────────────────────────────────

_HEADER_FONT = Font(bold=True, color="FFFFFF", size=11)
_HEADER_FILL = PatternFill(start_color="1a1a2e", end_color="1a1a2e", fill_type="solid")
_THIN_BORDER = Border(
    left=Side(style="thin"), right=Side(style="thin"),
    top=Side(style="thin"), bottom=Side(style="thin"),
)


def _style_sheet(ws):
    """Header style, borders, frozen header and auto-width columns."""
    for cell in ws[1]:
        cell.font = _HEADER_FONT
        cell.fill = _HEADER_FILL
        cell.alignment = Alignment(horizontal="center")
        cell.border = _THIN_BORDER

    for row in ws.iter_rows(min_row=2, max_row=ws.max_row):
        for cell in row:
            cell.border = _THIN_BORDER
            cell.alignment = Alignment(horizontal="center")

    ws.freeze_panes = "A2"

    for col_cells in ws.columns:
        max_len = max(len(str(cell.value or "")) for cell in col_cells)
        ws.column_dimensions[col_cells[0].column_letter].width = min(max_len * 2 + 4, 40)


def _sheet_title(title: str) -> str:
    return re.sub(r"[\[\]:*?/\\]", "-", title)[:31]


def _append_sheet(wb: Workbook, title: str, df: pd.DataFrame):
    ws = wb.create_sheet(title=_sheet_title(title))
    ws.sheet_properties.tabColor = TAB_COLORS[(len(wb.sheetnames) - 1) % len(TAB_COLORS)]
    if df.columns.empty:
        ws.append(["无数据"])
    else:
        for row in dataframe_to_rows(df, index=False, header=True):
            ws.append(row)
    _style_sheet(ws)
    return ws


def _new_workbook() -> Workbook:
    wb = Workbook()
    wb.remove(wb.active)
    return wb


def _overview_frame(result: AnalysisResult, school: str) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "科目": row["subject"],
            "满分": row["full_score"],
            "联考平均分": row["joint_average"],
            "学校平均分": row["average"],
            "最高分": row["max"],
            "最低分": row["min"],
            "优良率(%)": row["good_rate"],
            "及格率(%)": row["pass_rate"],
            "低分率(%)": row["low_rate"],
            "超均率(%)": row["above_average_rate"],
        }
        for row in subject_overview(result, school)
    ])


def _student_frame(result: AnalysisResult, subject: str, school: str) -> pd.DataFrame:
    if subject == ALL_SUBJECTS:
        subject_names = list(dict.fromkeys(
            result.scheme.subject_names + [name for st in result.students for name in st.subjects]
        ))
    else:
        subject_names = [subject]
    listed = student_table(result, subject, school)
    if subject == ALL_SUBJECTS:
        listed.sort(key=lambda st: (st.overall_rank, -st.total))
    else:
        # single-subject copies carry the subject score in total
        listed.sort(key=lambda st: (-st.total, st.name))
    rows = []
    for st in listed:
        row = {
            "联考排名": st.overall_rank,
            "校内排名": st.school_rank,
            "学校": st.school,
            "班级": st.class_name,
            "姓名": st.name,
            "考号": st.student_id,
        }
        for name in subject_names:
            row[name] = "缺考" if st.is_missing(name) else st.score(name)
        row["总分"] = st.total
        row["平均分"] = st.average
        rows.append(row)
    return pd.DataFrame(rows)


def _school_frame(result: AnalysisResult, subject: str) -> pd.DataFrame:
    grades = {row["school"]: row for row in school_grade_comparison(result, subject)}
    rows = []
    for row in school_comparison(result, subject):
        g = grades.get(row["school"], {})
        rows.append({
            "排名": row["rank"],
            "学校名称": row["school"],
            "学生人数": row["student_count"],
            "平均分": row["average"],
            "超均率(%)": row["above_average_rate"],
            "及格率(%)": row["pass_rate"],
            "优良率(%)": row["good_rate"],
            "优秀率(%)": row["excellent_rate"],
            "优秀人数 [90%, 100%]": g.get("excellent", {}).get("count", 0),
            "良好人数 [80%, 90%)": g.get("good", {}).get("count", 0),
            "中等人数 [60%, 80%)": g.get("medium", {}).get("count", 0),
            "低分人数 [0%, 20%)": g.get("low", {}).get("count", 0),
        })
    return pd.DataFrame(rows)


def _class_frame(result: AnalysisResult, subject: str, school: str) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "排名": row["rank"],
            "学校": row["school"],
            "班级": row["class_name"],
            "人数": row["student_count"],
            "平均分": row["average"],
            "及格率(%)": row["pass_rate"],
            "优良率(%)": row["good_rate"],
            "超均率(%)": row["above_average_rate"],
        }
        for row in class_comparison(result, subject, school)
    ])


def _grade_band_frame(result: AnalysisResult, subject: str, school: str) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "分档": row["grade"],
            "得分率区间": row["rate_range"],
            "成绩区间": row["score_range"],
            "人数": row["count"],
            "占比(%)": row["percentage"],
        }
        for row in grade_bands(result, subject, school)["rows"]
    ])


def _high_low_frame(result: AnalysisResult, subject: str, school: str) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "学校": row["school"],
            "平均分": row["average"],
            "最高分": row["max"],
            "最低分": row["min"],
            "高分组平均分(前30%)": row["high_average"],
            "低分组平均分(后30%)": row["low_average"],
            "高分组人数(人)": row["high_count"],
            "低分组人数(人)": row["low_count"],
        }
        for row in high_low_comparison(result, subject, school)
    ])


def generate_excel_export(
    result: AnalysisResult,
    output_path: str,
    subject: str = ALL_SUBJECTS,
    school: str = ALL_SCHOOLS,
):
    """Export the analysis workbook for the selected subject and school."""
    subject = subject or ALL_SUBJECTS
    school = school or ALL_SCHOOLS

    wb = _new_workbook()
    _append_sheet(wb, "总体情况", _overview_frame(result, school))
    _append_sheet(wb, "学生成绩单", _student_frame(result, subject, school))
    _append_sheet(wb, "学校对比", _school_frame(result, subject))
    _append_sheet(wb, "班级统计", _class_frame(result, subject, school))
    _append_sheet(wb, "成绩分档统计", _grade_band_frame(result, subject, school))
    _append_sheet(wb, "高低分对比分析", _high_low_frame(result, subject, school))
    wb.save(output_path)
    logger.info("Analysis workbook written to %s", output_path)


def _ranking_frame(rows: List[Dict[str, Any]], score_label: str) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "学校": row["school"],
            "考号": row["student_id"],
            "班级": row["class_name"],
            "姓名": row["name"],
            score_label: row["score"],
            "校内名次": row["school_rank"],
            "联考名次": row["overall_rank"],
        }
        for row in rows
    ])


def generate_ranking_excel(result: AnalysisResult, output_path: str):
    """Export 总排名 plus one ranking sheet per scheme subject."""
    ranking = ranking_export(result)

    total_df = _ranking_frame(ranking["total"], "总分")
    position = total_df.columns.get_loc("总分") if not total_df.empty else 0
    for offset, name in enumerate(result.scheme.subject_names):
        total_df.insert(position + offset, name, [row["scores"][name] for row in ranking["total"]])

    wb = _new_workbook()
    _append_sheet(wb, "总排名", total_df)
    for name, rows in ranking["subjects"].items():
        _append_sheet(wb, f"{name}排名", _ranking_frame(rows, name))
    wb.save(output_path)
    logger.info("Ranking workbook written to %s", output_path)
