# Deterministic scoring: answers -> question sub-scores -> dimension scores -> overall -> maturity band.
# Pure functions, full float precision; rounding happens only where results are displayed or exported.
from __future__ import annotations
from dataclasses import dataclass, asdict, replace
from typing import Callable

from assessment import AssessmentSpec, MaturityBand, QUESTION_TYPES

QUESTION_MAX = 10.0   # internal per-question unit
PUBLIC_MAX = 100.0    # public dimension/overall unit
SCALE_MAX = 5.0
TRI_STATE = {"yes": 1.0, "partial": 0.5, "no": 0.0}
TABLE_TYPES = ("table-dual-checkboxes", "scale-table", "tri-state-table")


@dataclass
class DimensionScore:
    id: str
    score: float
    target: float
    gap: float
    weight: float


@dataclass
class AssessmentResults:
    dimensions: list[DimensionScore]
    overall: float
    classification: MaturityBand

    def to_dict(self) -> dict:
        return {
            "dimensions": [asdict(d) for d in self.dimensions],
            "overall": self.overall,
            "classification": self.classification.model_dump(),
        }


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _dual_ratio(left_w: float, right_w: float, left: bool, right: bool) -> float:
    total = left_w + right_w
    if total <= 0:
        return 0.0
    return ((left_w if left else 0.0) + (right_w if right else 0.0)) / total


def _average(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# ------------------------
# Per-type rules, each returning a 0..1 ratio
# ------------------------
def _score_checkboxes(q, a) -> float:
    chosen = set(a.selected) & {o.id for o in q.options}
    if q.min_select and len(chosen) < q.min_select:
        return 0.0
    total = sum(o.weight for o in q.options)
    if total <= 0:
        return 0.0
    return sum(o.weight for o in q.options if o.id in chosen) / total


def _score_dual_checkboxes(q, a) -> float:
    return _dual_ratio(q.options.left.weight, q.options.right.weight, a.left, a.right)


def _score_scale(q, a) -> float:
    if a.value is None:
        return 0.0
    return _clamp(a.value, 0.0, SCALE_MAX) / SCALE_MAX


def _score_tri_state(q, a) -> float:
    return TRI_STATE.get(a.value, 0.0)


def _score_table_dual(q, a) -> float:
    lw, rw = q.columns.left.weight, q.columns.right.weight
    ratios = [
        _dual_ratio(lw, rw, a.rows[row.id].left, a.rows[row.id].right)
        for row in q.rows
        if row.id in a.rows
    ]
    return _average(ratios)


def _score_scale_table(q, a) -> float:
    ratios = [
        _clamp(a.rows[row.id], 0.0, SCALE_MAX) / SCALE_MAX
        for row in q.rows
        if a.rows.get(row.id) is not None
    ]
    return _average(ratios)


def _score_tri_state_table(q, a) -> float:
    ratios = [TRI_STATE[a.rows[row.id]] for row in q.rows if a.rows.get(row.id) is not None]
    return _average(ratios)


_SCORERS: dict[str, Callable] = {
    "checkboxes": _score_checkboxes,
    "dual-checkboxes": _score_dual_checkboxes,
    "scale-0-5": _score_scale,
    "tri-state": _score_tri_state,
    "table-dual-checkboxes": _score_table_dual,
    "scale-table": _score_scale_table,
    "tri-state-table": _score_tri_state_table,
}
if set(_SCORERS) != set(QUESTION_TYPES):
    raise RuntimeError(f"Scoring rules do not cover question types: {sorted(set(QUESTION_TYPES) ^ set(_SCORERS))}")


def answer_has_value(answer, question=None) -> bool:
    """True when the answer carries at least one actual selection/value.

    With ``question`` given, only option and row ids the question defines count;
    an answer made up solely of unknown ids is treated as unanswered.
    """
    if answer is None:
        return False
    t = answer.type
    known = None
    if question is not None and question.type == t:
        if t == "checkboxes":
            known = {o.id for o in question.options}
        elif t in TABLE_TYPES:
            known = {r.id for r in question.rows}
    if t == "checkboxes":
        return any(known is None or s in known for s in answer.selected)
    if t == "dual-checkboxes":
        return answer.left or answer.right
    if t in ("scale-0-5", "tri-state"):
        return answer.value is not None
    if t == "table-dual-checkboxes":
        return any((cell.left or cell.right) and (known is None or rid in known) for rid, cell in answer.rows.items())
    if t in ("scale-table", "tri-state-table"):
        return any(v is not None and (known is None or rid in known) for rid, v in answer.rows.items())
    return False


def score_question(question, answer) -> float:
    """Score one answer on the internal 0..10 scale.

    Raises:
        ValueError: If the answer's type tag does not match the question's.
    """
    if answer.type != question.type:
        raise ValueError(f"Answer type {answer.type!r} does not match question {question.id} ({question.type!r})")
    ratio = _SCORERS[question.type](question, answer)
    return _clamp(ratio * QUESTION_MAX, 0.0, QUESTION_MAX)


def compute_dimension_scores(spec: AssessmentSpec, answers: dict) -> list[DimensionScore]:
    """Weighted average of answered questions per dimension, rescaled to 0..100."""
    sums: dict[str, list[float]] = {}
    for q in spec.questions:
        a = answers.get(q.id)
        if not answer_has_value(a, q):
            continue
        acc = sums.setdefault(q.dimension_id, [0.0, 0.0])
        acc[0] += score_question(q, a) * q.weight
        acc[1] += q.weight

    out = []
    for d in spec.dimensions:
        weighted, total = sums.get(d.id, (0.0, 0.0))
        avg = weighted / total if total > 0 else 0.0
        score = avg / QUESTION_MAX * PUBLIC_MAX
        target = d.target_level * PUBLIC_MAX
        out.append(DimensionScore(id=d.id, score=score, target=target, gap=max(0.0, target - score), weight=d.weight))
    return out


def compute_overall_score(dimension_scores: list[DimensionScore]) -> float:
    # zero-weight dimensions are left out of the denominator
    weighted = [(d.score, d.weight) for d in dimension_scores if d.weight > 0]
    total = sum(w for _, w in weighted)
    if total <= 0:
        return 0.0
    return _clamp(sum(s * w for s, w in weighted) / total, 0.0, PUBLIC_MAX)


def classify(score: float, bands: list[MaturityBand]) -> MaturityBand:
    s = _clamp(score, 0.0, PUBLIC_MAX)
    for band in bands:
        if band.min <= s <= band.max:
            return band
    return bands[-1]


def compute_results(spec: AssessmentSpec, answers: dict) -> AssessmentResults:
    dims = compute_dimension_scores(spec, answers)
    overall = compute_overall_score(dims)
    return AssessmentResults(dimensions=dims, overall=overall, classification=classify(overall, spec.bands))


def validate_answers(spec: AssessmentSpec, answers: dict) -> dict:
    """Collect answer problems against the definition.

    Returns:
        dict: {"missing": [...required ids without a value],
               "unknown": [...ids not in the definition],
               "mismatched": [...ids whose type tag differs]}  (all empty when valid)
    """
    questions = spec.question_map()
    unknown = sorted(qid for qid in answers if qid not in questions)
    mismatched = sorted(
        qid for qid, a in answers.items() if qid in questions and a is not None and a.type != questions[qid].type
    )
    missing = [
        q.id for q in spec.questions
        if q.required and q.id not in mismatched and not answer_has_value(answers.get(q.id), q)
    ]
    return {"missing": missing, "unknown": unknown, "mismatched": mismatched}


def calculate_progress(spec: AssessmentSpec, answers: dict) -> float:
    total = len(spec.questions)
    answered = sum(1 for q in spec.questions if answer_has_value(answers.get(q.id), q))
    return answered / total * PUBLIC_MAX if total else 0.0


def analyze_gaps(dimension_scores: list[DimensionScore]) -> dict:
    by_gap = lambda d: -d.gap
    return {
        "critical": [d.id for d in sorted((d for d in dimension_scores if d.gap > 40), key=by_gap)],
        "moderate": [d.id for d in sorted((d for d in dimension_scores if 20 < d.gap <= 40), key=by_gap)],
        "minor": [d.id for d in sorted((d for d in dimension_scores if 10 < d.gap <= 20), key=by_gap)],
        "strengths": [d.id for d in sorted((d for d in dimension_scores if d.gap <= 10), key=lambda d: -d.score)],
    }


PRIORITY_RANK = {"critical": 3, "moderate": 2, "minor": 1}


def improvement_priorities(dimension_scores: list[DimensionScore], min_gap: float = 5.0) -> list[dict]:
    """Dimensions worth working on, most urgent first.

    Gaps of ``min_gap`` points or less are dropped. Ordered by priority
    (critical > moderate > minor) then by gap size.
    """
    out = []
    for d in dimension_scores:
        if d.gap <= min_gap:
            continue
        priority = "critical" if d.gap > 40 else "moderate" if d.gap > 20 else "minor"
        out.append({"priority": priority, "dimension_id": d.id, "gap": d.gap, "score": d.score, "target": d.target})
    out.sort(key=lambda p: (-PRIORITY_RANK[p["priority"]], -p["gap"]))
    return out


def target_overall_score(dimension_scores: list[DimensionScore]) -> float:
    """Overall score the dimension targets would produce."""
    return compute_overall_score([replace(d, score=d.target) for d in dimension_scores])


def maturity_progression(current: float, target: float, bands: list[MaturityBand]) -> dict:
    current_band = classify(current, bands)
    target_band = classify(target, bands)
    span = current_band.max - current_band.min
    progress = (_clamp(current, 0.0, PUBLIC_MAX) - current_band.min) / span if span > 0 else 0.0
    return {
        "current_level": current_band.model_dump(),
        "target_level": target_band.model_dump(),
        "levels_to_advance": target_band.level - current_band.level,
        "progress_in_current_level": progress,
        "remaining_in_current_level": 1.0 - progress,
    }
