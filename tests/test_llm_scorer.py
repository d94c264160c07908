import pytest
from langchain_core.messages import AIMessage

from migration_engine.api.schemas.shared import ColumnProfile, MappingStatus
from migration_engine.domain.imports.llm_scorer import LLMFieldScorer, parse_model_scores
from migration_engine.domain.imports.mapping import propose_mapping
from migration_engine.domain.imports.scoring import HeuristicScorer
from tests.utils.migration_data import CASE_SCHEMA


class FakeChatModel:
    """Stands in for ChatAnthropic: returns canned replies and records prompts."""

    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.prompts = []

    def invoke(self, messages):
        self.prompts.append(messages[0].content)
        if self.error is not None:
            raise self.error
        return AIMessage(content=self.reply)


def _profile(name="free_text_1"):
    return ColumnProfile(name=name, inferred_type="string", sample_values=("Laptop missing", "Badge stolen"))


def test_parse_model_scores_from_fenced_json():
    reply = 'Here you go:\n```json\n{"scores": {"description": 0.92, "category": 1.7}, "reason": "free text"}\n```'

    scores, reason = parse_model_scores(reply)

    assert scores == {"description": 0.92, "category": 1.0}
    assert reason == "free text"


def test_parse_model_scores_from_bare_braces_and_content_blocks():
    scores, reason = parse_model_scores([{"type": "text", "text": 'Sure {"scores": {"status": 0.4}}'}])

    assert scores == {"status": 0.4}
    assert reason == ""


def test_parse_model_scores_without_json():
    with pytest.raises(ValueError):
        parse_model_scores("I cannot help with that")


def test_model_confidence_is_blended_with_heuristic():
    model = FakeChatModel('{"scores": {"description": 1.0}, "reason": "narrative text"}')
    scorer = LLMFieldScorer(model=model, weight=0.5)
    profile = _profile()
    heuristic = HeuristicScorer().score(profile, CASE_SCHEMA.field("description")).score

    scores = {s.target_field: s for s in scorer.score_column(profile, CASE_SCHEMA)}

    assert scores["description"].score == round(0.5 * heuristic + 0.5, 4)
    assert "model 1.00 (narrative text)" in scores["description"].reason
    assert '"free_text_1"' in model.prompts[0]
    assert "category (enum, required)" in model.prompts[0]


def test_results_are_cached_per_column():
    model = FakeChatModel('{"scores": {"description": 0.9}}')
    scorer = LLMFieldScorer(model=model, weight=0.5)

    first = scorer.score_column(_profile(), CASE_SCHEMA)
    second = scorer.score_column(_profile(), CASE_SCHEMA)

    assert first == second
    assert len(model.prompts) == 1


def test_model_failure_falls_back_to_heuristic():
    scorer = LLMFieldScorer(model=FakeChatModel(error=TimeoutError("model timed out")), weight=0.5)
    profile = _profile()

    assert scorer.score_column(profile, CASE_SCHEMA) == HeuristicScorer().score_column(profile, CASE_SCHEMA)


def test_unparseable_reply_falls_back_to_heuristic():
    scorer = LLMFieldScorer(model=FakeChatModel("no idea"), weight=0.5)
    profile = _profile()

    assert scorer.score_column(profile, CASE_SCHEMA) == HeuristicScorer().score_column(profile, CASE_SCHEMA)


def test_model_scores_drive_mapping_proposal():
    scorer = LLMFieldScorer(model=FakeChatModel('{"scores": {"description": 1.0}}'), weight=0.9)

    mapping = propose_mapping([_profile()], CASE_SCHEMA, scorer)

    entry = mapping.entry_for("free_text_1")
    assert entry.target_field == "description"
    assert entry.status == MappingStatus.AUTO_ACCEPTED
