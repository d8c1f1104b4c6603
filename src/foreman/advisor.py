from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from foreman.config import ModelsConfig, PipelineConfig

COMPLEX_KEYWORDS = re.compile(
    r"\b(architecture|migrat\w*|refactor\w*|redesign|concurren\w*|security|distributed|schema)\b",
    re.IGNORECASE,
)
HEAVY_STAGES = {"plan", "design", "build", "review"}
LIGHT_STAGES = {"intake", "pr", "merge", "monitor"}
LOW_BUDGET_USD = 1.0


@dataclass(slots=True)
class ModelRecommendation:
    model: str
    reason: str


@dataclass(slots=True)
class IssueAnalysis:
    goal: str
    body: str = ""
    labels: list[str] = field(default_factory=list)

    @property
    def complexity(self) -> int:
        return estimate_complexity(self.goal, self.body)


def estimate_complexity(goal: str, body: str = "") -> int:
    """Score 1-10 from text length and keyword signals."""
    text = f"{goal}\n{body}"
    score = 2 + min(4, len(text.split()) // 40)
    score += 2 * min(2, len(COMPLEX_KEYWORDS.findall(text)))
    return max(1, min(10, score))


class ModelAdvisor(ABC):
    @abstractmethod
    def recommend_model(
        self, stage: str, complexity: int, budget: float | None = None
    ) -> ModelRecommendation:
        """Pick the model a stage should run with."""

    @abstractmethod
    def estimate_iterations(self, analysis: IssueAnalysis) -> int:
        """Estimate build iterations for an issue."""


class ConfiguredAdvisor(ModelAdvisor):
    def __init__(self, models: ModelsConfig, pipeline: PipelineConfig) -> None:
        self.models = models
        self.pipeline = pipeline

    def recommend_model(
        self, stage: str, complexity: int, budget: float | None = None
    ) -> ModelRecommendation:
        if budget is not None and budget < LOW_BUDGET_USD:
            return ModelRecommendation(self.models.fast_model, f"budget ${budget:.2f} is low")
        if stage in HEAVY_STAGES and complexity >= self.models.complexity_threshold:
            return ModelRecommendation(
                self.models.complex_model, f"complexity {complexity} on {stage}"
            )
        if stage in LIGHT_STAGES:
            return ModelRecommendation(self.models.fast_model, f"{stage} is a light stage")
        return ModelRecommendation(self.models.default_model, "default model")

    def estimate_iterations(self, analysis: IssueAnalysis) -> int:
        estimate = 3 + analysis.complexity * 2
        return max(1, min(self.pipeline.build_max_iterations, estimate))
