from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Request bodies arrive with camelCase keys; snake_case is accepted too."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
