"""Shared base for wire schemas."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """snake_case attributes in Python, camelCase keys on the wire.

    Requests accept either spelling; responses are dumped with by_alias=True.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
