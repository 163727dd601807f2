"""
Insights Request Model
======================
Per-run settings for an insights collection.

Optional numeric fields left as None fall back to the environment defaults in
cilens.core.config when the run starts.

Fields:
    project_path          — GitLab project path (e.g. "group/project")
    limit                 — max pipelines to sample
    ref                   — filter pipelines by git ref (branch/tag)
    since / until         — date window (inclusive, UTC days)
    base_url              — GitLab instance URL
    min_type_percentage   — drop pipeline types below this share (0–100)
    similarity_threshold  — optional Jaccard merge of similar pipeline types
    balanced_sampling     — split the sample 50/50 between successful and failed
    no_cache / clear_cache — bypass or reset the job cache
    output_path / pretty  — optional JSON export (files and library calls only)

InsightsApiRequest is the HTTP body: the same collection fields without the
export options, plus an optional caller-supplied token. Unknown fields are
rejected.
"""
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, SecretStr, field_validator, model_validator


class CollectionSettings(BaseModel):
    project_path: str
    limit: Optional[int] = None
    ref: Optional[str] = None
    since: Optional[date] = None
    until: Optional[date] = None
    base_url: Optional[str] = None
    min_type_percentage: Optional[float] = None
    similarity_threshold: Optional[float] = None
    balanced_sampling: bool = True
    no_cache: bool = False
    clear_cache: bool = False

    @field_validator("project_path")
    @classmethod
    def validate_project_path(cls, v: str) -> str:
        v = v.strip().strip("/")
        if not v:
            raise ValueError("project_path must not be empty")
        return v

    @field_validator("limit")
    @classmethod
    def validate_limit(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("limit must be at least 1")
        return v

    @field_validator("min_type_percentage")
    @classmethod
    def validate_percentage(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not 0 <= v <= 100:
            raise ValueError("min_type_percentage must be between 0 and 100")
        return v

    @field_validator("similarity_threshold")
    @classmethod
    def validate_similarity(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not 0 < v <= 1:
            raise ValueError("similarity_threshold must be in (0, 1]")
        return v

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v

    @model_validator(mode="after")
    def validate_window(self) -> "CollectionSettings":
        if self.since and self.until and self.since > self.until:
            raise ValueError("since must not be after until")
        return self


class InsightsRequest(CollectionSettings):
    output_path: Optional[str] = None
    pretty: bool = False


class InsightsApiRequest(CollectionSettings):
    model_config = ConfigDict(extra="forbid")

    # required whenever base_url points somewhere other than GITLAB_BASE_URL
    token: Optional[SecretStr] = None

    def to_settings(self) -> InsightsRequest:
        return InsightsRequest(**self.model_dump(exclude={"token"}))
