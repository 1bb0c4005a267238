"""
Upload routes — score sheet upload, parsing and the bundled sample sheet.
"""

import logging
import uuid
from pathlib import Path

from fastapi import APIRouter, File, HTTPException, UploadFile

from core.parser import (
    SAMPLE_DATA_DIR,
    detect_columns,
    parse_roster,
    read_grid,
    validate_grid,
)

logger = logging.getLogger(__name__)

router = APIRouter()

ALLOWED_EXTENSIONS = (".csv", ".xlsx", ".xls", ".ods")
SAMPLE_FILE = SAMPLE_DATA_DIR / "sample_joint_exam.csv"

# Keep upload path stable regardless of process working directory.
UPLOAD_DIR = Path(__file__).resolve().parent.parent / "uploads"
UPLOAD_DIR.mkdir(exist_ok=True)


def _parse_sheet(file_path: str, filename: str) -> dict:
    """Decode a sheet and return the parsed roster with detection details."""
    rows = read_grid(file_path)
    students = parse_roster(rows)
    layout = detect_columns(list(rows[0])) if rows else None
    return {
        "filename": filename,
        "row_count": max(len(rows) - 1, 0),
        "columns": layout.to_dict() if layout else {"roles": {}, "subjects": []},
        "issues": validate_grid(rows),
        "student_count": len(students),
        "students": [st.model_dump() for st in students],
    }


@router.post("/file")
async def upload_file(file: UploadFile = File(...)):
    """
    Upload a CSV, Excel, or ODS score sheet.
    The file is parsed immediately and removed from disk afterwards.
    """
    ext = Path(file.filename or "").suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(400, f"Unsupported file type: {ext}. Use CSV, Excel, or ODS.")

    save_path = UPLOAD_DIR / f"{uuid.uuid4()}{ext}"
    try:
        with open(save_path, "wb") as f:
            while True:
                chunk = await file.read(1024 * 1024)
                if not chunk:
                    break
                f.write(chunk)
        return _parse_sheet(str(save_path), file.filename)
    except Exception as e:
        logger.exception("Failed to process upload '%s'", file.filename)
        raise HTTPException(400, f"Failed to process upload '{file.filename}': {str(e)}")
    finally:
        save_path.unlink(missing_ok=True)


@router.get("/sample")
async def load_sample_data():
    """Parse the bundled joint-exam sample sheet."""
    if not SAMPLE_FILE.exists():
        raise HTTPException(404, f"Sample file not found on disk: {SAMPLE_FILE.name}")
    try:
        return _parse_sheet(str(SAMPLE_FILE), SAMPLE_FILE.name)
    except ValueError as e:
        logger.exception("Failed to load sample sheet")
        raise HTTPException(400, f"Failed to load sample sheet: {str(e)}")
