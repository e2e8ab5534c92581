"""Pydantic request/response schemas for the Petition API."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from petition.criteria import CRITERION_IDS
from petition.models import DOCUMENT_CATEGORIES, DOCUMENT_STATUSES, RELATIONSHIP_TYPES


def _check_criteria(keys: list[str]) -> list[str]:
    unknown = [k for k in keys if k not in CRITERION_IDS]
    if unknown:
        raise ValueError(f"unknown criteria: {', '.join(unknown)}")
    return list(dict.fromkeys(keys))


class _CamelIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CaseCreate(BaseModel):
    name: str = ""


class CaseOut(BaseModel):
    id: int
    name: str
    created_at: str | None = None
    document_count: int = 0
    recommender_count: int = 0


class ProfileUpdate(BaseModel):
    data: dict[str, Any]


class DocumentUpdate(_CamelIn):
    name: str | None = None
    status: str | None = None
    category: str | None = None
    recommender_id: int | None = Field(default=None, alias="recommenderId")
    content: str | None = None

    @field_validator("status")
    @classmethod
    def status_known(cls, v: str | None) -> str | None:
        if v is not None and v not in DOCUMENT_STATUSES:
            raise ValueError(f"status must be one of {', '.join(DOCUMENT_STATUSES)}")
        return v

    @field_validator("category")
    @classmethod
    def category_known(cls, v: str | None) -> str | None:
        if v is not None and v not in DOCUMENT_CATEGORIES:
            raise ValueError("unknown document category")
        return v


class DocumentOut(BaseModel):
    id: int
    name: str
    type: str
    source: str
    status: str
    category: str
    classification_confidence: float
    recommender_id: int | None = None
    evidence_verification_count: int = 0
    signature_status: str = "NONE"
    created_at: str | None = None
    updated_at: str | None = None


class DocumentDetail(DocumentOut):
    content: str = ""


class CriterionRequest(_CamelIn):
    criterion_id: str = Field(alias="criterionId")
    document_id: int = Field(alias="documentId")

    @field_validator("criterion_id")
    @classmethod
    def criterion_known(cls, v: str) -> str:
        if v not in CRITERION_IDS:
            raise ValueError("unknown criterion")
        return v


class RoutingUpdate(_CamelIn):
    action: Literal["add", "remove", "re-route"]
    document_id: int | None = Field(default=None, alias="documentId")
    criterion: str | None = None

    @field_validator("criterion")
    @classmethod
    def criterion_known(cls, v: str | None) -> str | None:
        if v is not None and v not in CRITERION_IDS:
            raise ValueError("unknown criterion")
        return v


class RecommenderCreate(_CamelIn):
    name: str = Field(min_length=1)
    title: str = Field(min_length=1)
    relationship_type: str = Field(alias="relationshipType")
    relationship_context: str = Field(min_length=1, alias="relationshipContext")
    organization: str | None = None
    email: str | None = None
    phone: str | None = None
    linkedin: str | None = Field(default=None, alias="linkedIn")
    country_region: str | None = Field(default=None, alias="countryRegion")
    bio: str | None = None
    credentials: str | None = None
    criteria_keys: list[str] = Field(default_factory=list, alias="criteriaKeys")

    @field_validator("relationship_type")
    @classmethod
    def relationship_known(cls, v: str) -> str:
        if v not in RELATIONSHIP_TYPES:
            raise ValueError(f"relationship type must be one of {', '.join(RELATIONSHIP_TYPES)}")
        return v

    @field_validator("email")
    @classmethod
    def email_shape(cls, v: str | None) -> str | None:
        if v and ("@" not in v or v.startswith("@") or v.endswith("@")):
            raise ValueError("invalid email address")
        return v or None

    @field_validator("criteria_keys")
    @classmethod
    def criteria_known(cls, v: list[str]) -> list[str]:
        return _check_criteria(v)


class RecommenderUpdate(_CamelIn):
    name: str | None = None
    title: str | None = None
    relationship_type: str | None = Field(default=None, alias="relationshipType")
    relationship_context: str | None = Field(default=None, alias="relationshipContext")
    organization: str | None = None
    email: str | None = None
    phone: str | None = None
    linkedin: str | None = Field(default=None, alias="linkedIn")
    country_region: str | None = Field(default=None, alias="countryRegion")
    bio: str | None = None
    credentials: str | None = None
    criteria_keys: list[str] | None = Field(default=None, alias="criteriaKeys")

    @field_validator("relationship_type")
    @classmethod
    def relationship_known(cls, v: str | None) -> str | None:
        if v is not None and v not in RELATIONSHIP_TYPES:
            raise ValueError(f"relationship type must be one of {', '.join(RELATIONSHIP_TYPES)}")
        return v

    @field_validator("criteria_keys")
    @classmethod
    def criteria_known(cls, v: list[str] | None) -> list[str] | None:
        return None if v is None else _check_criteria(v)


class RecommenderOut(BaseModel):
    id: int
    name: str
    title: str
    organization: str
    relationship_type: str
    relationship_context: str
    email: str
    phone: str
    linkedin: str
    country_region: str
    bio: str
    credentials: str
    criteria_keys: list[str] = []
    created_at: str | None = None


class ImportRequest(BaseModel):
    action: Literal["map", "create"]
    headers: list[str] = []
    rows: list[list[str]] = []
    recommenders: list[RecommenderCreate] = []


class ExtractUrlRequest(BaseModel):
    url: str


class ImproveContextRequest(_CamelIn):
    draft: str = Field(min_length=1)
    recommender_id: int | None = Field(default=None, alias="recommenderId")
    details: dict[str, str] = {}


class MergeRequest(BaseModel):
    incoming: dict[str, Any]
    apply: bool = False


class PromptUpdate(BaseModel):
    content: str
