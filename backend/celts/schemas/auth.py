from pydantic import BaseModel
from typing import Optional

from .common import CamelModel


class Token(BaseModel):
    access_token: str
    token_type: str
    refresh_token: Optional[str] = None
    role: Optional[str] = None


class RefreshRequest(CamelModel):
    refresh_token: str
