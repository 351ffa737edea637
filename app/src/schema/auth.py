from typing import Union
from pydantic import BaseModel, Field


# Authentication Schemas

class LoginRequest(BaseModel):
    """Schema for user login requests"""
    email: Union[str, None] = None
    password: Union[str, None] = None

    class Config:
        json_schema_extra = {
            "example": {
                "email": "alice@example.com",
                "password": "secret1"
            }
        }


class OtpRequest(BaseModel):
    """OTP submitted with a bearer challenge token"""
    otp: str = Field(..., min_length=1)


class TwoFALoginRequest(BaseModel):
    """OTP and challenge token submitted together in the body"""
    code: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1)


class TokenRefreshRequest(BaseModel):
    """Schema for token refresh requests"""
    refreshToken: str

    class Config:
        json_schema_extra = {
            "example": {
                "refreshToken": "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9..."
            }
        }


# Emailed code flows

class ForgotPasswordRequest(BaseModel):
    email: Union[str, None] = None


class VerifyResetCodeRequest(BaseModel):
    email: Union[str, None] = None
    code: Union[str, None] = None


class ResetPasswordRequest(BaseModel):
    """Schema for setting a new password with an emailed reset code"""
    email: Union[str, None] = None
    code: Union[str, None] = None
    newPassword: Union[str, None] = None

    class Config:
        json_schema_extra = {
            "example": {
                "email": "alice@example.com",
                "code": "482913",
                "newPassword": "new-secret"
            }
        }


class LoginOtpRequest(BaseModel):
    email: Union[str, None] = None


class LoginOtpVerifyRequest(BaseModel):
    """Schema for passwordless login with an emailed code"""
    email: Union[str, None] = None
    otp: Union[str, None] = None
