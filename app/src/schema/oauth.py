from enum import Enum
from typing import Union
from pydantic import BaseModel


class OAuthProviderEnum(str, Enum):
    google = "google"
    facebook = "facebook"


class ProviderIdentity(BaseModel):
    """External identity as confirmed by the provider"""
    provider: OAuthProviderEnum
    provider_user_id: str
    email: Union[str, None] = None
    email_verified: bool = False
    name: Union[str, None] = None
    picture: Union[str, None] = None


class GoogleAuthRequest(BaseModel):
    token: Union[str, None] = None


class FacebookAuthRequest(BaseModel):
    accessToken: Union[str, None] = None


class ConnectProviderRequest(BaseModel):
    """Google sends an ID token, Facebook an access token"""
    token: Union[str, None] = None
    accessToken: Union[str, None] = None
