"""Gemini API client and structured-output helper.

Uses the modern google-genai SDK (not google.generativeai). Every Gemini
backed collaborator (classification, OCR, marking) asks for JSON shaped by a
pydantic model and parses the reply back into that model.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from google import genai
from google.genai import types
from pydantic import BaseModel

from scanmark.config import get_settings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def get_gemini_client() -> genai.Client:
    """Initialize and return a Gemini API client.

    Returns:
        genai.Client: Initialized Gemini client ready for API calls.

    Raises:
        ValueError: If GEMINI_API_KEY is not set in environment.
    """
    settings = get_settings()

    if not settings.gemini_api_key:
        raise ValueError(
            "GEMINI_API_KEY not set in environment. "
            "Please set this variable in your .env file or environment."
        )

    return genai.Client(api_key=settings.gemini_api_key)


def _remove_additional_properties(schema: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively clean JSON schema for Gemini API compatibility.

    Gemini's API doesn't support the additionalProperties field. This function:
    1. Removes additionalProperties from all object types
    2. For objects with only additionalProperties (like Dict[str, T]), converts
       them to empty objects to allow free-form data

    Args:
        schema: JSON schema dictionary to clean

    Returns:
        Cleaned schema compatible with Gemini API
    """
    if not isinstance(schema, dict):
        return schema

    cleaned: Dict[str, Any] = {}
    had_additional_properties = False

    for key, value in schema.items():
        if key == "additionalProperties":
            had_additional_properties = True
            continue

        if isinstance(value, dict):
            cleaned[key] = _remove_additional_properties(value)
        elif isinstance(value, list):
            cleaned[key] = [
                _remove_additional_properties(item) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            cleaned[key] = value

    if (cleaned.get("type") == "object" and
        had_additional_properties and
        ("properties" not in cleaned or not cleaned.get("properties"))):
        return {}

    return cleaned


def gemini_response_schema(model_cls: Type[BaseModel]) -> Dict[str, Any]:
    """JSON schema of a pydantic model, cleaned for Gemini structured output."""
    return _remove_additional_properties(model_cls.model_json_schema())


def image_part(image_bytes: bytes, mime_type: str) -> types.Part:
    """Wrap raw image bytes as a Gemini content part."""
    return types.Part.from_bytes(data=image_bytes, mime_type=mime_type)


async def generate_structured(
    client: genai.Client,
    model: str,
    contents: List[Any],
    response_model: Type[ModelT],
    system_instruction: Optional[str] = None,
) -> Tuple[ModelT, int]:
    """Call Gemini with a response schema and parse the reply.

    Args:
        client: Gemini API client
        model: Model name
        contents: Prompt parts (text and image parts)
        response_model: Pydantic model describing the expected JSON
        system_instruction: Optional system prompt

    Returns:
        Tuple of (parsed model instance, total tokens used)

    Raises:
        ValueError: If Gemini returns an empty response
        pydantic.ValidationError: If the JSON does not fit the model
    """
    config_dict: Dict[str, Any] = {
        "response_mime_type": "application/json",
        "response_json_schema": gemini_response_schema(response_model),
        "temperature": 0.0,
    }
    if system_instruction:
        config_dict["system_instruction"] = system_instruction

    response = await client.aio.models.generate_content(
        model=model,
        contents=contents,
        config=types.GenerateContentConfig(**config_dict),
    )

    response_text = response.text
    if response_text is None:
        raise ValueError("Gemini API returned empty response")

    parsed = response_model.model_validate(json.loads(response_text))

    total_tokens = 0
    if hasattr(response, "usage_metadata") and response.usage_metadata:
        total_tokens = response.usage_metadata.total_token_count or 0

    logger.debug(f"Gemini {model} returned {response_model.__name__} ({total_tokens} tokens)")
    return parsed, total_tokens
