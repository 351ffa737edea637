from pydantic import BaseModel, Field


class VerifyEmailTokenRequest(BaseModel):
    emailToken: str = Field(..., min_length=1)


class VerifyTwoFAUnlockRequest(BaseModel):
    otp: str = Field(..., min_length=1)
    tempToken: str = Field(..., min_length=1)


class RequestUnlockEmailRequest(BaseModel):
    email: str = Field(..., min_length=1)
