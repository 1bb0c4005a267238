"""
Analyze routes — analysis result and derived view endpoints.
"""

import os
from typing import List

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from core.grading import ALL_SCHOOLS, ALL_SUBJECTS, GradingScheme, default_scheme, get_all_band_thresholds
from core.schemas import AnalysisResult, StudentRecord
from core.stats import analyze
from core.views import VIEWS

router = APIRouter()

GRADE_LEVEL = os.getenv("GRADE_LEVEL", "九年级")


def _scheme_from_payload(payload: dict) -> GradingScheme:
    scheme = payload.get("scheme")
    if not scheme:
        return default_scheme(GRADE_LEVEL)
    return GradingScheme.model_validate(scheme)


def _roster_from_payload(payload: dict) -> List[StudentRecord]:
    students = payload.get("students")
    if students is None:
        raise HTTPException(400, "No students provided.")
    if not isinstance(students, list):
        raise HTTPException(400, "'students' must be a list.")
    return [StudentRecord.model_validate(st) for st in students]


def result_from_payload(payload: dict) -> AnalysisResult:
    """Validate the request body and run the analysis."""
    try:
        roster = _roster_from_payload(payload)
        scheme = _scheme_from_payload(payload)
    except ValidationError as e:
        raise HTTPException(422, str(e))
    return analyze(roster, scheme)


@router.post("")
async def analyze_roster(payload: dict):
    """Full analysis: subject, class, school and overall statistics."""
    return result_from_payload(payload)


@router.post("/views/{view}")
async def derived_view(view: str, payload: dict):
    """Run one derived view for the selected subject and school."""
    if view not in VIEWS:
        raise HTTPException(404, f"Unknown view '{view}'. Available: {sorted(VIEWS)}")
    result = result_from_payload(payload)
    subject = payload.get("subject") or ALL_SUBJECTS
    school = payload.get("school") or ALL_SCHOOLS
    return VIEWS[view](result, subject=subject, school=school)


@router.get("/bands")
async def band_thresholds():
    """Return the score-rate band scale for legends."""
    return get_all_band_thresholds()
