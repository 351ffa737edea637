from typing import Union
from pydantic import BaseModel, Field


class TwoFASetupRequest(BaseModel):
    """setupToken is only sent during a forced setup right after login"""
    setupToken: Union[str, None] = None


class TwoFAVerifyRequest(BaseModel):
    code: str = Field(..., min_length=1)
    token: Union[str, None] = None


class TwoFADisableRequest(BaseModel):
    password: Union[str, None] = None
