"""Model routing per decision type."""

from __future__ import annotations

from dataclasses import dataclass

from coach_pipeline.config import InferenceSettings
from coach_pipeline.decisions.models import DecisionType

SUPPORTED_PROFILES = ("fast", "quality")
STRUCTURED_TEMPERATURE = 0.3
TEXT_TEMPERATURE = 0.7


@dataclass(slots=True)
class DecisionRouting:
    """Decision type -> profile -> concrete model."""

    profile_map: dict[str, str]
    models: dict[str, str]

    @classmethod
    def from_settings(cls, settings: InferenceSettings) -> DecisionRouting:
        models = {"fast": settings.model_fast, "quality": settings.model_quality}
        for profile, model in models.items():
            if not model.strip():
                raise ValueError(f"Empty model configured for profile={profile!r}")
        return cls(profile_map=dict(settings.decision_profile_map), models=models)

    def profile_for(self, decision_type: DecisionType) -> str:
        profile = self.profile_map.get(decision_type.value, "fast")
        if profile not in SUPPORTED_PROFILES:
            raise ValueError(f"Unsupported model profile: {profile!r}")
        return profile

    def model_for(self, decision_type: DecisionType) -> str:
        return self.models[self.profile_for(decision_type)]
