from datetime import date
from enum import Enum
from typing import Union
from pydantic import BaseModel


class AccountStatusEnum(str, Enum):
    ACTIVE = "ACTIVE"
    LOCKED = "LOCKED"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


class UserRoleEnum(str, Enum):
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    ADMIN = "ADMIN"


class PresenceStatusEnum(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


class RegisterRequest(BaseModel):
    """Registration payload. Fields are optional so that missing values get the 400 validation message."""
    username: Union[str, None] = None
    email: Union[str, None] = None
    password: Union[str, None] = None
    fullName: Union[str, None] = None
    dateOfBirth: Union[date, None] = None
    school: Union[str, None] = None

    class Config:
        json_schema_extra = {
            "example": {
                "username": "alice",
                "email": "alice@example.com",
                "password": "secret1",
                "fullName": "Alice Nguyen",
            }
        }
