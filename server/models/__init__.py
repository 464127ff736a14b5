"""
Pydantic models for API requests.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class TokenRequest(BaseModel):
    """Body of POST /api/fortnox/oauth/token. Every field is checked by the gateway."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    code: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
