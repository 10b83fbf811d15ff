"""Base schema classes with camelCase alias generation.

Queue API schemas inherit from these instead of BaseModel directly, so
Python stays snake_case while the JSON the batch dashboard reads is camelCase.
"""
from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for request schemas and job config models. Accepts both casings."""
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "protected_namespaces": (),
    }


class CamelORMModel(BaseModel):
    """Base for response schemas read from BatchJob / QueueItem rows."""
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
        "protected_namespaces": (),
    }
