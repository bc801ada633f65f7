import datetime
from typing import Optional

from pydantic import BaseModel


class TokenData(BaseModel):
    """Claims read from a bearer token issued by the identity provider."""
    email: Optional[str] = None
    expires_at: Optional[datetime.datetime] = None
