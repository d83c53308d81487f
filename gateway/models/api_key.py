from datetime import datetime

from pydantic import BaseModel, Field


class CreateApiKeyRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class ApiKeyResponse(BaseModel):
    id: str
    name: str
    key_prefix: str
    is_active: bool
    last_used_at: datetime | None = None
    created_at: datetime


class ApiKeyCreatedResponse(ApiKeyResponse):
    key: str  # Full key shown only on creation


class ApiKeyListResponse(BaseModel):
    data: list[ApiKeyResponse]


class MessageResponse(BaseModel):
    message: str
