from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ApiKeys(BaseModel):
    """
    Fortnox OAuth settings and the current access token.
    Stored as one blob and always read/written as a whole.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    fortnox_client_id: str = ""
    fortnox_client_secret: str = ""
    fortnox_access_token: str = ""
    fortnox_redirect_uri: str = ""

    @property
    def is_authorized(self) -> bool:
        """True when both values needed to call the purchase order API are present."""
        return bool(self.fortnox_access_token and self.fortnox_client_secret)


class TokenResponse(BaseModel):
    """Result of exchanging an authorization code at the Fortnox token endpoint."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None    # seconds
    scope: Optional[str] = None
