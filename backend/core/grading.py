"""
grading.py — Grading scheme and score-rate bands.

A grading scheme is the ordered list of subjects sitting the joint exam, each
with its own full / pass / excellent score. Schemes are plain configuration:
the engine reads them and never changes them.

Score-rate bands classify a score by score / full_score:
  优秀 [90%, 100%]   良好 [80%, 90%)   中等 [60%, 80%)
  待及格 [20%, 60%)  低分 [0%, 20%)
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


# Selection sentinels shared by the views and the routes.
ALL_SUBJECTS = "全学科"
ALL_SCHOOLS = "联考"
UNKNOWN_SCHOOL = "未知学校"

# Fallback thresholds for a subject the scheme does not list.
DEFAULT_FULL_SCORE = 100.0
DEFAULT_PASS_SCORE = 60.0
DEFAULT_EXCELLENT_SCORE = 90.0

# Summed pass/excellent lines used only when the scheme has no subjects.
FALLBACK_TOTAL_PASS_SCORE = 420.0
FALLBACK_TOTAL_EXCELLENT_SCORE = 630.0

# Exclusive score-rate bands (min_rate, key, label), ordered high to low.
SCORE_RATE_BANDS = [
    (0.9, "excellent", "优秀"),
    (0.8, "good", "良好"),
    (0.6, "medium", "中等"),
    (0.2, "pending", "待及格"),
    (0.0, "low", "低分"),
]

PASS_RATE_LINE = 0.6
GOOD_RATE_LINE = 0.8
EXCELLENT_RATE_LINE = 0.9


class ScoreConfig(BaseModel):
    """Thresholds for one subject, in raw score units."""

    name: str
    full_score: float = DEFAULT_FULL_SCORE
    pass_score: float = DEFAULT_PASS_SCORE
    excellent_score: float = DEFAULT_EXCELLENT_SCORE

    @model_validator(mode="after")
    def _check_thresholds(self) -> "ScoreConfig":
        if not (0 <= self.pass_score <= self.excellent_score <= self.full_score):
            raise ValueError(
                f"Subject '{self.name}': expected 0 <= pass_score <= excellent_score "
                f"<= full_score, got {self.pass_score}/{self.excellent_score}/{self.full_score}."
            )
        return self


class GradingScheme(BaseModel):
    """Ordered subjects plus the grade-level label they apply to."""

    grade_level: str = "九年级"
    subjects: List[ScoreConfig] = Field(default_factory=list)

    def config_for(self, subject: str) -> ScoreConfig:
        """Return the subject's config, or the 100/60/90 default if unlisted."""
        for cfg in self.subjects:
            if cfg.name == subject:
                return cfg
        return ScoreConfig(name=subject)

    def has_subject(self, subject: str) -> bool:
        return any(cfg.name == subject for cfg in self.subjects)

    @property
    def subject_names(self) -> List[str]:
        return [cfg.name for cfg in self.subjects]

    @property
    def total_full_score(self) -> float:
        return sum(cfg.full_score for cfg in self.subjects)

    @property
    def total_pass_score(self) -> float:
        if not self.subjects:
            return FALLBACK_TOTAL_PASS_SCORE
        return sum(cfg.pass_score for cfg in self.subjects)

    @property
    def total_excellent_score(self) -> float:
        if not self.subjects:
            return FALLBACK_TOTAL_EXCELLENT_SCORE
        return sum(cfg.excellent_score for cfg in self.subjects)


def default_scheme(grade_level: str = "九年级") -> GradingScheme:
    """The seven-subject ninth-grade scheme used by the joint exam."""
    return GradingScheme(
        grade_level=grade_level,
        subjects=[
            ScoreConfig(name="语文", full_score=120, pass_score=72, excellent_score=108),
            ScoreConfig(name="数学", full_score=120, pass_score=72, excellent_score=108),
            ScoreConfig(name="英语", full_score=90, pass_score=54, excellent_score=81),
            ScoreConfig(name="政治(道德与法治)", full_score=90, pass_score=54, excellent_score=81),
            ScoreConfig(name="物理", full_score=90, pass_score=54, excellent_score=81),
            ScoreConfig(name="化学", full_score=90, pass_score=54, excellent_score=81),
            ScoreConfig(name="历史", full_score=90, pass_score=54, excellent_score=81),
        ],
    )


def score_rate(score: float, full_score: float) -> Optional[float]:
    """score / full_score, or None when the full score is not positive."""
    if full_score <= 0:
        return None
    return score / full_score


def get_band(score: float, full_score: float) -> Dict[str, Any]:
    """Return the exclusive score-rate band a score falls in."""
    rate = score_rate(score, full_score)
    if rate is None:
        return {"key": "low", "label": "低分", "rate": None}
    for min_rate, key, label in SCORE_RATE_BANDS:
        if rate >= min_rate:
            return {"key": key, "label": label, "rate": round(rate * 100, 2)}
    return {"key": "low", "label": "低分", "rate": round(rate * 100, 2)}


def get_all_band_thresholds() -> List[Dict[str, Any]]:
    """Return the band scale for legends."""
    thresholds = []
    for idx, (min_rate, key, label) in enumerate(SCORE_RATE_BANDS):
        max_rate = 1.0 if idx == 0 else SCORE_RATE_BANDS[idx - 1][0]
        thresholds.append(
            {
                "key": key,
                "label": label,
                "min_rate": min_rate,
                "max_rate": max_rate,
                "closed": idx == 0,
            }
        )
    return thresholds
