"""
Model-backed mapping scorer.

Asks Claude how well a source column fits each target field and blends that
confidence with the heuristic score. Any model failure (missing key, timeout,
unparseable answer) degrades to the heuristic result, so mapping never
depends on the model being reachable.
"""

import json
import logging
import re
import threading
from typing import Any, Dict, List, Optional, Tuple

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage

from migration_engine.api.schemas.shared import ColumnProfile
from migration_engine.core.config import settings
from migration_engine.domain.imports.schema import TargetSchema
from migration_engine.domain.imports.scoring import FieldScore, FieldScorer, HeuristicScorer

logger = logging.getLogger(__name__)

SCORING_PROMPT = """You are helping migrate compliance case data between systems.

A source export has a column named "{column}" (profiled type: {inferred_type}).
Sample values: {samples}

Target entity "{entity_type}" has these fields:
{fields}

For every target field, estimate the probability (0.0 to 1.0) that the source
column should be mapped to it. Respond with JSON only, in this shape:
{{"scores": {{"<field name>": <probability>, ...}}, "reason": "<one sentence>"}}"""


def _format_fields(schema: TargetSchema) -> str:
    lines = []
    for target_field in schema.fields:
        line = f"- {target_field.name} ({target_field.type.value}{', required' if target_field.required else ''})"
        if target_field.enum_values:
            line += f" values: {', '.join(target_field.enum_values[:20])}"
        elif target_field.examples:
            line += f" e.g. {', '.join(target_field.examples[:3])}"
        if target_field.description:
            line += f" - {target_field.description}"
        lines.append(line)
    return "\n".join(lines)


def parse_model_scores(content: Any) -> Tuple[Dict[str, float], str]:
    """Extract ``{"scores": {...}, "reason": ...}`` from a model reply."""
    if isinstance(content, list):
        content = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    text = str(content)
    match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL)
    if match:
        text = match.group(1)
    else:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end == -1:
            raise ValueError("Model response did not contain JSON")
        text = text[start : end + 1]

    payload = json.loads(text)
    scores = {
        str(name): max(0.0, min(1.0, float(value)))
        for name, value in (payload.get("scores") or {}).items()
    }
    return scores, str(payload.get("reason") or "")


class LLMFieldScorer(FieldScorer):
    """
    Blends model confidence with ``HeuristicScorer``.

    ``weight`` is the share of the final score taken from the model. Results
    are cached per (entity type, column name, samples) for the scorer's
    lifetime so re-proposing a mapping does not re-query the model.
    """

    def __init__(self, model=None, heuristic: Optional[HeuristicScorer] = None, weight: Optional[float] = None):
        self._model = model
        self.heuristic = heuristic or HeuristicScorer()
        self.weight = settings.llm_score_weight if weight is None else weight
        self._cache: Dict[Tuple, List[FieldScore]] = {}
        self._lock = threading.Lock()

    def _get_model(self):
        if self._model is None:
            if not settings.anthropic_api_key:
                raise RuntimeError("ANTHROPIC_API_KEY is not configured")
            self._model = ChatAnthropic(
                model=settings.llm_model,
                api_key=settings.anthropic_api_key,
                temperature=0,
                max_tokens=1024,
                timeout=settings.llm_api_timeout,
                max_retries=settings.llm_max_retries,
            )
        return self._model

    def score(self, profile, target_field) -> FieldScore:
        # Single-field scoring has no model context to share; use the baseline.
        return self.heuristic.score(profile, target_field)

    def _ask_model(self, profile: ColumnProfile, schema: TargetSchema) -> Tuple[Dict[str, float], str]:
        prompt = SCORING_PROMPT.format(
            column=profile.name,
            inferred_type=profile.inferred_type,
            samples=", ".join(repr(v) for v in profile.sample_values) or "(none)",
            entity_type=schema.entity_type,
            fields=_format_fields(schema),
        )
        response = self._get_model().invoke([HumanMessage(content=prompt)])
        return parse_model_scores(response.content)

    def score_column(self, profile: ColumnProfile, schema: TargetSchema) -> List[FieldScore]:
        key = (schema.entity_type, profile.name, tuple(profile.sample_values))
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        baseline = self.heuristic.score_column(profile, schema)
        try:
            model_scores, model_reason = self._ask_model(profile, schema)
        except Exception as exc:
            logger.warning(f"Model scoring failed for column '{profile.name}', using heuristic scores: {exc}")
            return baseline

        blended = []
        for score in baseline:
            model_score = model_scores.get(score.target_field, 0.0)
            combined = (1 - self.weight) * score.score + self.weight * model_score
            blended.append(
                FieldScore(
                    target_field=score.target_field,
                    score=round(combined, 4),
                    name_score=score.name_score,
                    type_score=score.type_score,
                    value_score=score.value_score,
                    reason=f"{score.reason}; model {model_score:.2f}" + (f" ({model_reason})" if model_reason else ""),
                )
            )
        blended.sort(key=lambda s: s.score, reverse=True)
        with self._lock:
            self._cache[key] = blended
        return blended
