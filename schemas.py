"""Pydantic schemas for tracking payloads, stored records and LRS configuration."""

from __future__ import annotations

import json
import os
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "ObjectType",
    "TrackingScore",
    "TrackingResult",
    "TrackingData",
    "XapiStatementRecord",
    "ScormTrackingRecord",
    "ScormDataBody",
    "ScormRuntimeBody",
    "LrsConfiguration",
    "ModuleCompletionBody",
    "QuizAttemptBody",
    "dump_json_field",
]

ObjectType = Literal["framework", "module", "quiz"]


def dump_json_field(value: Any) -> Optional[str]:
    """Serialise a result/context block for storage; strings are stored verbatim."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        value = value.model_dump(by_alias=True, exclude_none=True)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


class TrackingScore(BaseModel):
    scaled: float = Field(ge=-1.0, le=1.0, description="Score normalised to the xAPI -1..1 range.")
    raw: float
    min: float = 0
    max: float


class TrackingResult(BaseModel):
    completion: bool | None = None
    success: bool | None = None
    score: TrackingScore | None = None
    duration: str | None = Field(default=None, description="ISO 8601 duration, e.g. PT1M35S.")


class TrackingData(BaseModel):
    """Body accepted by ``POST /api/xapi/statements``."""

    verb: str = Field(min_length=1)
    object: str = Field(min_length=1, description="Display name of the tracked object.")
    object_type: ObjectType = Field(alias="objectType")
    object_id: int = Field(alias="objectId")
    result: TrackingResult | None = None
    context: Dict[str, Any] | None = None

    model_config = {"populate_by_name": True}

    @field_validator("verb", "object")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must be a non-empty string")
        return value


class XapiStatementRecord(BaseModel):
    id: int
    user_id: str
    verb: str
    object: str
    object_type: ObjectType
    object_id: int
    result: str | None = None
    context: str | None = None
    timestamp: datetime
    stored: bool = False


class ScormTrackingRecord(BaseModel):
    id: int
    user_id: str
    sco_id: str
    element_name: str
    element_value: str
    timestamp: datetime


class ScormDataBody(BaseModel):
    sco_id: str = Field(alias="scoId", min_length=1)
    element_name: str = Field(alias="elementName", min_length=1)
    element_value: str = Field(alias="elementValue")

    model_config = {"populate_by_name": True}

    @field_validator("element_value", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        # SCORM content passes numbers through SetValue as well as strings
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class ScormRuntimeBody(BaseModel):
    """Envelope posted by the generated SCORM API wrapper."""

    action: Literal["initialize", "terminate", "setValue", "commit"]
    sco_id: str = Field(alias="scoId", min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class LrsConfiguration(BaseModel):
    endpoint: str = Field(min_length=1)
    username: str
    password: str
    is_active: bool = Field(default=True, alias="isActive")

    model_config = {"populate_by_name": True}

    @field_validator("endpoint")
    @classmethod
    def _check_endpoint(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not (value.startswith("http://") or value.startswith("https://")):
            raise ValueError("endpoint must be an http(s) URL")
        return value

    @property
    def statements_url(self) -> str:
        return f"{self.endpoint}/statements"

    def masked(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "username": self.username,
            "password": "********" if self.password else "",
            "isActive": self.is_active,
        }

    @classmethod
    def from_env(cls) -> Optional["LrsConfiguration"]:
        """Build a configuration from ``LRS_ENDPOINT``/``LRS_USERNAME``/``LRS_PASSWORD``."""
        endpoint = os.getenv("LRS_ENDPOINT")
        if not endpoint:
            return None
        return cls(
            endpoint=endpoint,
            username=os.getenv("LRS_USERNAME", ""),
            password=os.getenv("LRS_PASSWORD", ""),
        )


class ModuleCompletionBody(BaseModel):
    completed: bool
    request_time: str | None = Field(default=None, alias="requestTime")
    client_id: str | None = Field(default=None, alias="clientId")
    operation_id: str | None = Field(default=None, alias="operationId")

    model_config = {"populate_by_name": True}


class QuizAttemptBody(BaseModel):
    quiz_id: int = Field(alias="quizId")
    score: float = Field(ge=0)
    max_score: float = Field(alias="maxScore", gt=0)
    passed: bool | None = None
    time_taken: int = Field(default=0, alias="timeTaken", ge=0)
    answers: List[Any] = Field(default_factory=list)

    model_config = {"populate_by_name": True}
