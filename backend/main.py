"""
JointScore — Joint-Exam Score Analysis
FastAPI backend entry point.
"""

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load environment before route modules read it.
load_dotenv()

from core.grading import default_scheme
from routes.upload import router as upload_router
from routes.analyze import router as analyze_router
from routes.reports import router as reports_router

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

REPORT_TITLE = os.getenv("REPORT_TITLE", "联考成绩分析报告")
GRADE_LEVEL = os.getenv("GRADE_LEVEL", "九年级")
# Comma-separated allowed origins, e.g. http://localhost:5173,https://app.example.com
raw_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000")
ALLOWED_ORIGINS = [o.strip() for o in raw_origins.split(",") if o.strip()]

app = FastAPI(
    title="JointScore API",
    description=(
        "Joint-exam score analysis: rankings, pass/excellent rates, grade bands "
        "and high/low group comparisons across schools and classes."
    ),
    version="1.0.0",
)

# CORS — allow the web dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register route modules
app.include_router(upload_router, prefix="/api/upload", tags=["Upload"])
app.include_router(analyze_router, prefix="/api/analyze", tags=["Analytics"])
app.include_router(reports_router, prefix="/api/reports", tags=["Reports"])


@app.get("/api/health")
async def health_check():
    return {
        "status": "ok",
        "report_title": REPORT_TITLE,
        "grade_level": GRADE_LEVEL,
    }


@app.get("/api/config")
async def get_config():
    """Return the default grading scheme to the frontend."""
    return {
        "report_title": REPORT_TITLE,
        "scheme": default_scheme(GRADE_LEVEL).model_dump(),
    }
