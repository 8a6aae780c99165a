import json
from pathlib import Path
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

DEFAULT_ROSTER = [
    "gemini-3-flash-preview",  # worker 1
    "gemini-2.0-flash-001",    # worker 2
    "gemini-2.5-flash-lite",   # worker 3
    "gemini-2.5-pro",          # judge
]


class EnsembleConfig(BaseModel):
    roster: List[str] = Field(default_factory=lambda: list(DEFAULT_ROSTER), min_length=1)
    mode: Literal["ensemble", "failover"] = "ensemble"
    max_attempts: int = Field(default=3, ge=1)
    timeout_s: float = Field(default=60.0, gt=0)
    temperature: float = Field(default=0.4, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=8192, ge=1)
    backoff_s: float = Field(default=1.0, ge=0.0)
    overload_backoff_s: float = Field(default=2.0, ge=0.0)
    cache_ttl_s: float = Field(default=120.0, gt=0)
    unreliable_label_threshold: int = Field(default=4, ge=2)
    unreliable_confidence_cap: int = Field(default=40, ge=0, le=100)
    confidence_threshold: int = Field(default=90, ge=0, le=100)  # failover mode only
    primary_provider: Optional[str] = None
    secondary_provider: Optional[str] = None
    max_concurrency: int = Field(default=8, ge=1)
    subject: str = "certification exam"

    @property
    def workers(self) -> List[str]:
        if len(self.roster) == 1:
            return list(self.roster)
        return self.roster[:-1]

    @property
    def judge(self) -> Optional[str]:
        if len(self.roster) == 1:
            return None
        return self.roster[-1]

    @model_validator(mode="after")
    def _check_designated_providers(self) -> "EnsembleConfig":
        for name in ("primary_provider", "secondary_provider"):
            provider_id = getattr(self, name)
            if provider_id is not None and provider_id not in self.workers:
                raise ValueError(f"{name} {provider_id!r} is not a worker in the roster")
        return self


def load_config(path: Union[str, Path]) -> EnsembleConfig:
    with open(path) as f:
        data = json.load(f)
    return EnsembleConfig(**data)
