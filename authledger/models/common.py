"""Shared response envelope and base model."""

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys, accepting either spelling on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApiResponse(CamelModel, Generic[T]):
    """Success envelope returned by every JSON endpoint.

    Attributes:
        success: Always True for successful responses
        message: Optional human-readable message
        data: Endpoint payload
    """

    success: bool = True
    message: Optional[str] = None
    data: Optional[T] = None
