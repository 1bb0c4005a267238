"""
Report routes — PDF and Excel report generation endpoints.
"""

import os
import uuid
from pathlib import Path

from fastapi import APIRouter
from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

from core.grading import ALL_SCHOOLS, ALL_SUBJECTS
from core.report_builder import generate_excel_export, generate_ranking_excel, generate_summary_pdf
from routes.analyze import result_from_payload

router = APIRouter()

REPORT_TITLE = os.getenv("REPORT_TITLE", "联考成绩分析报告")
UPLOAD_DIR = Path(__file__).resolve().parent.parent / "uploads"
REPORTS_DIR = UPLOAD_DIR / "reports"
REPORTS_DIR.mkdir(parents=True, exist_ok=True)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _safe_unlink(path: str):
    """Best-effort file deletion after response is sent."""
    Path(path).unlink(missing_ok=True)


def _report_path(prefix: str, ext: str) -> Path:
    report_id = str(uuid.uuid4())[:8]
    return REPORTS_DIR / f"{prefix}_{report_id}{ext}"


def _file_response(path: Path, filename: str, media_type: str) -> FileResponse:
    return FileResponse(
        path=str(path),
        filename=filename,
        media_type=media_type,
        background=BackgroundTask(_safe_unlink, str(path)),
    )


@router.post("/excel")
async def analysis_excel(payload: dict):
    """Export the analysis workbook for the selected subject and school."""
    result = result_from_payload(payload)
    subject = payload.get("subject") or ALL_SUBJECTS
    school = payload.get("school") or ALL_SCHOOLS
    output_path = _report_path("analysis", ".xlsx")

    generate_excel_export(result, str(output_path), subject=subject, school=school)
    return _file_response(output_path, "score_analysis.xlsx", XLSX_MEDIA_TYPE)


@router.post("/ranking-excel")
async def ranking_excel(payload: dict):
    """Export total and per-subject rankings."""
    result = result_from_payload(payload)
    output_path = _report_path("ranking", ".xlsx")

    generate_ranking_excel(result, str(output_path))
    return _file_response(output_path, "score_ranking.xlsx", XLSX_MEDIA_TYPE)


@router.post("/pdf")
async def summary_pdf(payload: dict):
    """Generate the joint-exam summary PDF."""
    result = result_from_payload(payload)
    title = payload.get("title") or REPORT_TITLE
    output_path = _report_path("summary", ".pdf")

    generate_summary_pdf(result, str(output_path), title)
    return _file_response(output_path, "score_summary.pdf", "application/pdf")
