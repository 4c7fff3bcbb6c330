"""Static assessment definition: dimensions, questions and maturity bands.

The definition is read-only reference data loaded from JSON and validated once
at load time. Questions are a tagged union discriminated by ``type``.
"""
from functools import lru_cache
from pathlib import Path
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from config import ASSESSMENT_SPEC_PATH


class Dimension(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    weight: float = Field(1.0, ge=0)
    target_level: float = Field(1.0, ge=0, le=1)


class Option(BaseModel):
    id: str
    label: str
    weight: float = 1.0  # may be negative for "bad practice" options


class Row(BaseModel):
    id: str
    label: str


class DualColumn(BaseModel):
    id: str
    label: str
    weight: float = Field(1.0, ge=0)


class DualOptions(BaseModel):
    left: DualColumn
    right: DualColumn


class _QuestionBase(BaseModel):
    id: str
    dimension_id: str
    title: str
    description: Optional[str] = None
    weight: float = Field(1.0, ge=0)
    required: bool = True


class _TableQuestion(_QuestionBase):
    rows: List[Row] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _unique_rows(self):
        ids = [r.id for r in self.rows]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Question {self.id} has duplicate row ids")
        return self


class CheckboxesQuestion(_QuestionBase):
    type: Literal["checkboxes"]
    options: List[Option] = Field(..., min_length=1)
    min_select: Optional[int] = Field(None, ge=0)
    max_select: Optional[int] = Field(None, ge=0)


class DualCheckboxesQuestion(_QuestionBase):
    type: Literal["dual-checkboxes"]
    options: DualOptions


class ScaleQuestion(_QuestionBase):
    type: Literal["scale-0-5"]
    scale_labels: List[str] = []


class TriStateQuestion(_QuestionBase):
    type: Literal["tri-state"]


class TableDualCheckboxesQuestion(_TableQuestion):
    type: Literal["table-dual-checkboxes"]
    columns: DualOptions


class ScaleTableQuestion(_TableQuestion):
    type: Literal["scale-table"]
    scale_labels: List[str] = []


class TriStateTableQuestion(_TableQuestion):
    type: Literal["tri-state-table"]


Question = Annotated[
    Union[
        CheckboxesQuestion,
        DualCheckboxesQuestion,
        ScaleQuestion,
        TriStateQuestion,
        TableDualCheckboxesQuestion,
        ScaleTableQuestion,
        TriStateTableQuestion,
    ],
    Field(discriminator="type"),
]

QUESTION_TYPES = (
    "checkboxes",
    "dual-checkboxes",
    "scale-0-5",
    "tri-state",
    "table-dual-checkboxes",
    "scale-table",
    "tri-state-table",
)


class MaturityBand(BaseModel):
    min: float
    max: float
    label_key: str
    level: int


def default_bands() -> List[MaturityBand]:
    return [
        MaturityBand(min=0, max=25, label_key="maturity.level1", level=1),    # Basic
        MaturityBand(min=25, max=50, label_key="maturity.level2", level=2),   # Average
        MaturityBand(min=50, max=75, label_key="maturity.level3", level=3),   # Moderately advanced
        MaturityBand(min=75, max=100, label_key="maturity.level4", level=4),  # Advanced
    ]


def validate_bands(bands: List[MaturityBand]) -> None:
    """Require an ordered, gap-free, non-overlapping cover of [0, 100].

    Adjoining bands share their boundary value; classification resolves the
    shared value to the lower band (first match wins).

    Raises:
        ValueError: On any gap, overlap, inverted range or unordered level.
    """
    if not bands:
        raise ValueError("At least one maturity band is required")
    if bands[0].min != 0:
        raise ValueError("Maturity bands must start at 0")
    if bands[-1].max != 100:
        raise ValueError("Maturity bands must end at 100")
    for band in bands:
        if band.min > band.max:
            raise ValueError(f"Band level {band.level} has min > max")
    for prev, cur in zip(bands, bands[1:]):
        if cur.min != prev.max:
            raise ValueError(
                f"Band level {cur.level} must start where level {prev.level} ends ({prev.max}), got {cur.min}"
            )
        if cur.level <= prev.level:
            raise ValueError("Band levels must be strictly increasing")


class AssessmentSpec(BaseModel):
    version: str
    language: str
    dimensions: List[Dimension] = Field(..., min_length=1)
    questions: List[Question] = Field(..., min_length=1)
    bands: List[MaturityBand] = Field(default_factory=default_bands)

    @model_validator(mode="after")
    def _check_consistency(self):
        dim_ids = [d.id for d in self.dimensions]
        if len(dim_ids) != len(set(dim_ids)):
            raise ValueError("Duplicate dimension ids")
        q_ids = [q.id for q in self.questions]
        if len(q_ids) != len(set(q_ids)):
            raise ValueError("Duplicate question ids")
        known = set(dim_ids)
        for q in self.questions:
            if q.dimension_id not in known:
                raise ValueError(f"Question {q.id} references unknown dimension {q.dimension_id}")
        validate_bands(self.bands)
        return self

    def question_map(self) -> dict:
        return {q.id: q for q in self.questions}


def load_assessment_spec(path: Path) -> AssessmentSpec:
    return AssessmentSpec.model_validate_json(Path(path).read_text(encoding="utf-8"))


@lru_cache(maxsize=1)
def get_assessment_spec() -> AssessmentSpec:
    """FastAPI dependency: the configured assessment definition, loaded once."""
    return load_assessment_spec(ASSESSMENT_SPEC_PATH)
