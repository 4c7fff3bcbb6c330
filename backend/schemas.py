# schemas.py
from pydantic import BaseModel, Field
from typing import Annotated, Dict, List, Literal, Optional, Union

Finite = Annotated[float, Field(allow_inf_nan=False)]
TriValue = Literal["yes", "partial", "no"]

# ------------------------
# Answers (tagged by question type)
# ------------------------
class CheckboxesAnswer(BaseModel):
    type: Literal["checkboxes"]
    selected: List[str] = []

class DualCheckboxesAnswer(BaseModel):
    type: Literal["dual-checkboxes"]
    left: bool = False
    right: bool = False

class ScaleAnswer(BaseModel):
    type: Literal["scale-0-5"]
    value: Optional[Finite] = None

class TriStateAnswer(BaseModel):
    type: Literal["tri-state"]
    value: Optional[TriValue] = None

class DualCell(BaseModel):
    left: bool = False
    right: bool = False

class TableDualCheckboxesAnswer(BaseModel):
    type: Literal["table-dual-checkboxes"]
    rows: Dict[str, DualCell] = {}

class ScaleTableAnswer(BaseModel):
    type: Literal["scale-table"]
    rows: Dict[str, Optional[Finite]] = {}

class TriStateTableAnswer(BaseModel):
    type: Literal["tri-state-table"]
    rows: Dict[str, Optional[TriValue]] = {}

Answer = Annotated[
    Union[
        CheckboxesAnswer,
        DualCheckboxesAnswer,
        ScaleAnswer,
        TriStateAnswer,
        TableDualCheckboxesAnswer,
        ScaleTableAnswer,
        TriStateTableAnswer,
    ],
    Field(discriminator="type"),
]
AnswerMap = Dict[str, Answer]  # question_id -> answer

# ------------------------
# Survey lifecycle
# ------------------------
class CompanyDetailsIn(BaseModel):
    company_name: str
    company_size: Literal["micro", "small", "medium", "large"]
    nace: str
    region: str
    country: Optional[str] = None
    county: Optional[str] = None
    class Config:
        extra = "forbid"  # keeps PII (emails) out of the anonymous record

class SurveyCreate(BaseModel):
    company_details: CompanyDetailsIn
    language: str = "no"
    survey_version: str = "v1.0"

class SubmittedResults(BaseModel):
    overall: Finite
    class Config:
        extra = "allow"

class SurveyComplete(BaseModel):
    answers: AnswerMap
    results: Optional[SubmittedResults] = None   # optional client-side computation, cross-checked

class UserDetailsIn(BaseModel):
    email: str
    contact_name: Optional[str] = None
    policy_version: Optional[str] = None

class SurveyUpgrade(BaseModel):
    user_details: UserDetailsIn

class ScorePreview(BaseModel):
    answers: AnswerMap

# ------------------------
# Magic links
# ------------------------
class MagicLinkRequest(BaseModel):
    email: str

class MagicLinkVerify(BaseModel):
    email: str
    token: str = Field(..., min_length=1)

