import random

import pytest
from pydantic import TypeAdapter, ValidationError

from assessment import AssessmentSpec, MaturityBand, default_bands, validate_bands, load_assessment_spec, QUESTION_TYPES
from config import ASSESSMENT_SPEC_PATH
from schemas import AnswerMap
from scoring import (
    score_question, compute_dimension_scores, compute_overall_score, classify, compute_results,
    validate_answers, calculate_progress, analyze_gaps, answer_has_value, DimensionScore,
    improvement_priorities, maturity_progression, target_overall_score,
)

ANSWERS = TypeAdapter(AnswerMap)

def answers(raw):
    return ANSWERS.validate_python(raw)

def spec_with(questions, dimensions=None, bands=None):
    data = {
        "version": "test",
        "language": "en",
        "dimensions": dimensions or [{"id": "d1", "name": "D1"}],
        "questions": questions,
    }
    if bands is not None:
        data["bands"] = bands
    return AssessmentSpec.model_validate(data)

def q(spec, qid):
    return spec.question_map()[qid]

CHECKBOXES = {
    "id": "cb", "dimension_id": "d1", "type": "checkboxes", "title": "t",
    "options": [{"id": i, "label": i, "weight": w} for i, w in (("a", 1), ("b", 2), ("c", 3), ("d", 4))],
}

def _table(qid, qtype, n_rows, **extra):
    return {"id": qid, "dimension_id": "d1", "type": qtype, "title": "t",
            "rows": [{"id": f"r{i}", "label": f"R{i}"} for i in range(1, n_rows + 1)], **extra}

DUAL_COLUMNS = {"left": {"id": "l", "label": "L", "weight": 1}, "right": {"id": "r", "label": "R", "weight": 0.5}}

# ------------------------
# Per-question rules
# ------------------------
def test_weighted_checkboxes():
    spec = spec_with([CHECKBOXES])
    a = answers({"cb": {"type": "checkboxes", "selected": ["b", "d"]}})
    assert score_question(q(spec, "cb"), a["cb"]) == pytest.approx(6.0)

def test_checkboxes_below_min_select_scores_zero():
    spec = spec_with([{**CHECKBOXES, "min_select": 3}])
    a = answers({"cb": {"type": "checkboxes", "selected": ["c", "d"]}})
    assert score_question(q(spec, "cb"), a["cb"]) == 0.0

def test_checkboxes_with_negative_option_stay_in_range():
    spec = spec_with([{
        "id": "cb", "dimension_id": "d1", "type": "checkboxes", "title": "t",
        "options": [{"id": "x", "label": "x", "weight": 1}, {"id": "y", "label": "y", "weight": 1},
                    {"id": "bad", "label": "bad", "weight": -1}],
    }])
    question = q(spec, "cb")
    assert score_question(question, answers({"cb": {"type": "checkboxes", "selected": ["x", "y"]}})["cb"]) == 10.0
    assert score_question(question, answers({"cb": {"type": "checkboxes", "selected": ["bad"]}})["cb"]) == 0.0

def test_min_select_ignores_duplicate_and_unknown_ids():
    spec = spec_with([{**CHECKBOXES, "min_select": 3}])
    a = answers({"cb": {"type": "checkboxes", "selected": ["d", "d", "zzz"]}})
    assert score_question(q(spec, "cb"), a["cb"]) == 0.0
    a = answers({"cb": {"type": "checkboxes", "selected": ["b", "c", "d"]}})
    assert score_question(q(spec, "cb"), a["cb"]) == pytest.approx(9.0)

def test_dual_checkboxes():
    spec = spec_with([{"id": "dc", "dimension_id": "d1", "type": "dual-checkboxes", "title": "t", "options": DUAL_COLUMNS}])
    question = q(spec, "dc")
    assert score_question(question, answers({"dc": {"type": "dual-checkboxes", "right": True}})["dc"]) == pytest.approx(10 / 3)
    assert score_question(question, answers({"dc": {"type": "dual-checkboxes", "left": True, "right": True}})["dc"]) == 10.0

@pytest.mark.parametrize("value,expected", [(0, 0.0), (2.5, 5.0), (5, 10.0), (7, 10.0), (-2, 0.0)])
def test_scale_is_clamped(value, expected):
    spec = spec_with([{"id": "s", "dimension_id": "d1", "type": "scale-0-5", "title": "t"}])
    assert score_question(q(spec, "s"), answers({"s": {"type": "scale-0-5", "value": value}})["s"]) == pytest.approx(expected)

@pytest.mark.parametrize("value,expected", [("yes", 10.0), ("partial", 5.0), ("no", 0.0)])
def test_tri_state(value, expected):
    spec = spec_with([{"id": "t", "dimension_id": "d1", "type": "tri-state", "title": "t"}])
    assert score_question(q(spec, "t"), answers({"t": {"type": "tri-state", "value": value}})["t"]) == expected

def test_scale_table_ignores_unanswered_rows():
    five = spec_with([_table("st", "scale-table", 5)])
    two = spec_with([_table("st", "scale-table", 2)])
    partial = answers({"st": {"type": "scale-table", "rows": {"r1": 4, "r2": 1, "r3": None}}})
    s5 = score_question(q(five, "st"), partial["st"])
    s2 = score_question(q(two, "st"), partial["st"])
    assert s5 == s2 == pytest.approx(5.0)

def test_table_dual_averages_answered_rows_and_ignores_unknown_rows():
    spec = spec_with([_table("td", "table-dual-checkboxes", 4, columns=DUAL_COLUMNS)])
    a = answers({"td": {"type": "table-dual-checkboxes", "rows": {
        "r1": {"left": True},
        "r2": {"right": True},
        "zz": {"left": True, "right": True},
    }}})
    # (2/3 + 1/3) / 2 answered rows
    assert score_question(q(spec, "td"), a["td"]) == pytest.approx(5.0)

def test_tri_state_table():
    spec = spec_with([_table("tt", "tri-state-table", 3)])
    a = answers({"tt": {"type": "tri-state-table", "rows": {"r1": "yes", "r2": "partial"}}})
    assert score_question(q(spec, "tt"), a["tt"]) == pytest.approx(7.5)

def test_mismatched_answer_type_is_rejected():
    spec = spec_with([CHECKBOXES])
    with pytest.raises(ValueError):
        score_question(q(spec, "cb"), answers({"cb": {"type": "scale-0-5", "value": 3}})["cb"])

def test_empty_answers_count_as_unanswered():
    a = answers({
        "a": {"type": "checkboxes", "selected": []},
        "b": {"type": "dual-checkboxes"},
        "c": {"type": "scale-0-5"},
        "d": {"type": "scale-table", "rows": {"r1": None}},
        "e": {"type": "table-dual-checkboxes", "rows": {"r1": {}}},
    })
    assert not any(answer_has_value(v) for v in a.values())
    assert answer_has_value(answers({"s": {"type": "scale-0-5", "value": 0}})["s"])

def test_table_answer_with_only_undefined_rows_is_unanswered():
    spec = spec_with([
        {"id": "s", "dimension_id": "d1", "type": "scale-0-5", "title": "t"},
        _table("st", "scale-table", 2),
    ])
    a = answers({"s": {"type": "scale-0-5", "value": 5}, "st": {"type": "scale-table", "rows": {"bogus": 5}}})
    assert not answer_has_value(a["st"], q(spec, "st"))
    assert validate_answers(spec, a)["missing"] == ["st"]
    (dim,) = compute_dimension_scores(spec, a)
    assert dim.score == pytest.approx(100.0)
    assert calculate_progress(spec, a) == pytest.approx(50.0)

def test_checkboxes_with_only_unknown_options_are_unanswered():
    spec = spec_with([CHECKBOXES])
    a = answers({"cb": {"type": "checkboxes", "selected": ["zzz"]}})
    assert not answer_has_value(a["cb"], q(spec, "cb"))
    assert validate_answers(spec, a)["missing"] == ["cb"]

def test_every_question_type_has_a_scoring_rule():
    import scoring
    assert set(scoring._SCORERS) == set(QUESTION_TYPES)

# ------------------------
# Aggregation
# ------------------------
def test_end_to_end_sixty_percent():
    spec = spec_with([CHECKBOXES])
    results = compute_results(spec, answers({"cb": {"type": "checkboxes", "selected": ["b", "d"]}}))
    (dim,) = results.dimensions
    assert dim.score == pytest.approx(60.0)
    assert dim.target == 100.0
    assert dim.gap == pytest.approx(40.0)
    assert results.overall == pytest.approx(60.0)
    assert results.classification.level == 3

def test_question_weight_is_the_averaging_weight():
    spec = spec_with([
        {"id": "s1", "dimension_id": "d1", "type": "scale-0-5", "title": "t", "weight": 3},
        {"id": "s2", "dimension_id": "d1", "type": "scale-0-5", "title": "t", "weight": 1},
    ])
    dims = compute_dimension_scores(spec, answers({
        "s1": {"type": "scale-0-5", "value": 5},
        "s2": {"type": "scale-0-5", "value": 0},
    }))
    assert dims[0].score == pytest.approx(75.0)

def test_unanswered_dimension_scores_zero_with_full_gap():
    spec = spec_with(
        [CHECKBOXES, {"id": "s", "dimension_id": "d2", "type": "scale-0-5", "title": "t"}],
        dimensions=[{"id": "d1", "name": "D1"}, {"id": "d2", "name": "D2", "target_level": 0.8}],
    )
    dims = {d.id: d for d in compute_dimension_scores(spec, answers({"cb": {"type": "checkboxes", "selected": ["d"]}}))}
    assert dims["d2"].score == 0.0
    assert dims["d2"].gap == pytest.approx(80.0)

def test_gap_is_never_negative():
    spec = spec_with(
        [{"id": "s", "dimension_id": "d1", "type": "scale-0-5", "title": "t"}],
        dimensions=[{"id": "d1", "name": "D1", "target_level": 0.5}],
    )
    (dim,) = compute_dimension_scores(spec, answers({"s": {"type": "scale-0-5", "value": 5}}))
    assert dim.score == 100.0
    assert dim.gap == 0.0

def test_zero_weight_dimensions_are_excluded_from_overall():
    dims = [
        DimensionScore(id="a", score=80.0, target=100.0, gap=20.0, weight=1),
        DimensionScore(id="b", score=0.0, target=100.0, gap=100.0, weight=0),
    ]
    assert compute_overall_score(dims) == pytest.approx(80.0)
    assert compute_overall_score([DimensionScore(id="z", score=50.0, target=100.0, gap=50.0, weight=0)]) == 0.0
    assert compute_overall_score([]) == 0.0

def test_random_answer_sets_stay_in_range_and_match_one_band():
    spec = load_assessment_spec(ASSESSMENT_SPEC_PATH)
    rng = random.Random(20240601)
    for _ in range(200):
        raw = {}
        for question in spec.questions:
            if rng.random() < 0.2:
                continue
            if question.type == "checkboxes":
                raw[question.id] = {"type": "checkboxes",
                                    "selected": [o.id for o in question.options if rng.random() < 0.5]}
            elif question.type == "table-dual-checkboxes":
                raw[question.id] = {"type": question.type, "rows": {
                    r.id: {"left": rng.random() < 0.5, "right": rng.random() < 0.5} for r in question.rows}}
            elif question.type == "scale-table":
                raw[question.id] = {"type": question.type, "rows": {
                    r.id: rng.choice([None, rng.uniform(-1, 6)]) for r in question.rows}}
            elif question.type == "tri-state-table":
                raw[question.id] = {"type": question.type, "rows": {
                    r.id: rng.choice([None, "yes", "partial", "no"]) for r in question.rows}}
        results = compute_results(spec, answers(raw))
        assert 0.0 <= results.overall <= 100.0
        matching = [b for b in spec.bands if b.min <= results.overall <= b.max]
        assert results.classification == matching[0]
        assert compute_results(spec, answers(raw)).to_dict() == results.to_dict()

# ------------------------
# Bands
# ------------------------
@pytest.mark.parametrize("score,level", [(-5, 1), (0, 1), (25, 1), (25.0001, 2), (50, 2), (74.99, 3), (75, 3), (100, 4), (150, 4)])
def test_classify_prefers_first_matching_band(score, level):
    assert classify(score, default_bands()).level == level

def _bands(*ranges):
    return [MaturityBand(min=lo, max=hi, label_key=f"l{i}", level=i) for i, (lo, hi) in enumerate(ranges, start=1)]

@pytest.mark.parametrize("bands", [
    _bands((0, 25), (26, 50), (50, 100)),   # gap
    _bands((0, 30), (25, 100)),             # overlap
    _bands((5, 50), (50, 100)),             # does not start at 0
    _bands((0, 50), (50, 90)),              # does not reach 100
    _bands((0, 60), (60, 50), (50, 100)),   # inverted range
    [],
])
def test_invalid_bands_are_rejected(bands):
    with pytest.raises(ValueError):
        validate_bands(bands)

def test_unordered_levels_are_rejected():
    bands = [MaturityBand(min=0, max=50, label_key="a", level=2), MaturityBand(min=50, max=100, label_key="b", level=1)]
    with pytest.raises(ValueError):
        validate_bands(bands)

def test_spec_with_bad_bands_fails_to_load():
    with pytest.raises(ValidationError):
        spec_with([CHECKBOXES], bands=[{"min": 0, "max": 40, "label_key": "a", "level": 1},
                                       {"min": 50, "max": 100, "label_key": "b", "level": 2}])

def test_spec_rejects_unknown_dimension_and_duplicate_ids():
    with pytest.raises(ValidationError):
        spec_with([{**CHECKBOXES, "dimension_id": "nope"}])
    with pytest.raises(ValidationError):
        spec_with([CHECKBOXES, CHECKBOXES])
    with pytest.raises(ValidationError):
        spec_with([{"id": "tt", "dimension_id": "d1", "type": "tri-state-table", "title": "t", "rows": []}])

def test_bundled_assessment_loads():
    spec = load_assessment_spec(ASSESSMENT_SPEC_PATH)
    assert len(spec.dimensions) == 6
    assert len(spec.questions) == 11
    assert {qq.type for qq in spec.questions} <= set(QUESTION_TYPES)
    assert [b.level for b in spec.bands] == [1, 2, 3, 4]

# ------------------------
# Validation, progress, gaps
# ------------------------
def test_validate_answers_reports_missing_unknown_and_mismatched():
    spec = spec_with([CHECKBOXES, {"id": "s", "dimension_id": "d1", "type": "scale-0-5", "title": "t"},
                      {"id": "opt", "dimension_id": "d1", "type": "tri-state", "title": "t", "required": False}])
    problems = validate_answers(spec, answers({
        "cb": {"type": "checkboxes", "selected": []},
        "s": {"type": "tri-state", "value": "yes"},
        "extra": {"type": "scale-0-5", "value": 1},
    }))
    assert problems == {"missing": ["cb"], "unknown": ["extra"], "mismatched": ["s"]}

def test_progress():
    spec = spec_with([CHECKBOXES, {"id": "s", "dimension_id": "d1", "type": "scale-0-5", "title": "t"}])
    assert calculate_progress(spec, answers({})) == 0.0
    assert calculate_progress(spec, answers({"s": {"type": "scale-0-5", "value": 3}})) == 50.0

def test_analyze_gaps_groups_by_size():
    dims = [
        DimensionScore(id="crit", score=10, target=100, gap=90, weight=1),
        DimensionScore(id="mod", score=70, target=100, gap=30, weight=1),
        DimensionScore(id="minor", score=85, target=100, gap=15, weight=1),
        DimensionScore(id="ok", score=95, target=100, gap=5, weight=1),
        DimensionScore(id="best", score=100, target=100, gap=0, weight=1),
    ]
    assert analyze_gaps(dims) == {"critical": ["crit"], "moderate": ["mod"], "minor": ["minor"], "strengths": ["best", "ok"]}

def test_improvement_priorities_order_and_threshold():
    dims = [
        DimensionScore(id="minor", score=85, target=100, gap=15, weight=1),
        DimensionScore(id="tiny", score=96, target=100, gap=4, weight=1),
        DimensionScore(id="crit_small", score=55, target=100, gap=45, weight=1),
        DimensionScore(id="crit_big", score=10, target=100, gap=90, weight=1),
        DimensionScore(id="mod", score=70, target=100, gap=30, weight=1),
    ]
    priorities = improvement_priorities(dims)
    assert [p["dimension_id"] for p in priorities] == ["crit_big", "crit_small", "mod", "minor"]
    assert [p["priority"] for p in priorities] == ["critical", "critical", "moderate", "minor"]
    assert priorities[0] == {"priority": "critical", "dimension_id": "crit_big", "gap": 90, "score": 10, "target": 100}

def test_maturity_progression():
    bands = default_bands()
    prog = maturity_progression(30.0, 80.0, bands)
    assert prog["current_level"]["level"] == 2
    assert prog["target_level"]["level"] == 4
    assert prog["levels_to_advance"] == 2
    assert prog["progress_in_current_level"] == pytest.approx(0.2)
    assert prog["remaining_in_current_level"] == pytest.approx(0.8)
    assert maturity_progression(90.0, 40.0, bands)["levels_to_advance"] == -2

def test_target_overall_uses_targets_and_skips_zero_weight():
    dims = [
        DimensionScore(id="a", score=10, target=80, gap=70, weight=1),
        DimensionScore(id="b", score=10, target=40, gap=30, weight=3),
        DimensionScore(id="c", score=0, target=100, gap=100, weight=0),
    ]
    assert target_overall_score(dims) == pytest.approx(50.0)
