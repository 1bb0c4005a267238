"""Schemas for parsed rosters and analysis results."""

from typing import Dict, List

from pydantic import BaseModel, Field

from core.grading import UNKNOWN_SCHOOL, GradingScheme


class SubjectRank(BaseModel):
    """Rank of one student in one subject."""

    school_rank: int = 0
    overall_rank: int = 0


class StudentRecord(BaseModel):
    """One student's row after parsing."""

    id: str
    name: str
    student_id: str = ""
    class_name: str = ""
    school: str = ""
    subjects: Dict[str, float] = Field(default_factory=dict)
    missing_subjects: Dict[str, bool] = Field(default_factory=dict, description="Subjects marked absent/disqualified")
    total: float = 0.0
    average: float = 0.0
    school_rank: int = 0
    overall_rank: int = 0
    rank: int = Field(0, description="Same as overall_rank")
    subject_ranks: Dict[str, SubjectRank] = Field(default_factory=dict)

    def is_missing(self, subject: str) -> bool:
        return bool(self.missing_subjects.get(subject, False))

    def score(self, subject: str) -> float:
        """Score for a subject, 0 when the subject is absent from the row."""
        return self.subjects.get(subject, 0.0)

    @property
    def school_key(self) -> str:
        return self.school or UNKNOWN_SCHOOL


class DistributionBucket(BaseModel):
    range: str
    count: int
    percentage: float


class SubjectStats(BaseModel):
    subject: str
    count: int = Field(0, description="Students not marked missing for the subject")
    average: float = 0.0
    max: float = 0.0
    min: float = 0.0
    pass_rate: float = 0.0
    excellent_rate: float = 0.0
    distribution: List[DistributionBucket] = Field(default_factory=list)


class ClassStats(BaseModel):
    class_name: str
    school: str
    student_count: int
    average: float
    pass_rate: float
    excellent_rate: float
    school_rank: int = 0
    overall_rank: int = 0
    rank: int = 0


class SchoolStats(BaseModel):
    school_name: str
    student_count: int
    average: float
    pass_rate: float
    excellent_rate: float
    class_count: int
    rank: int = 0


class OverallStats(BaseModel):
    total_students: int = 0
    overall_average: float = 0.0
    overall_pass_rate: float = 0.0
    overall_excellent_rate: float = 0.0
    total_schools: int = 0
    total_classes: int = 0


class AnalysisResult(BaseModel):
    """Everything the views and exports read."""

    students: List[StudentRecord] = Field(default_factory=list)
    subject_stats: List[SubjectStats] = Field(default_factory=list)
    class_stats: List[ClassStats] = Field(default_factory=list)
    school_stats: List[SchoolStats] = Field(default_factory=list)
    overall_stats: OverallStats = Field(default_factory=OverallStats)
    scheme: GradingScheme = Field(default_factory=GradingScheme)
