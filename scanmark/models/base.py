"""Shared pydantic base classes."""

from pydantic import BaseModel, ConfigDict


class GeminiCompatibleModel(BaseModel):
    """Base model with a Gemini API-compatible JSON schema.

    Gemini's API doesn't support additionalProperties in JSON schemas; the
    schema is further cleaned by ``gemini_response_schema`` before use.
    Instances are frozen: pipeline stages derive new records with
    ``model_copy(update=...)`` instead of mutating shared ones.
    """

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "additionalProperties": False
        },
    )
