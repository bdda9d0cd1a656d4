import json

from pydantic import BaseModel, Field, HttpUrl, field_validator
from uuid import UUID
from datetime import datetime
from typing import Dict, Any, Optional, List, Literal

AuthType = Literal["none", "bearer", "basic", "api_key"]
HttpMethod = Literal["POST", "PUT", "PATCH"]

MAX_TIMEOUT_SECONDS = 300


def _check_payload_template(value: Optional[str]) -> Optional[str]:
    if value:
        try:
            json.loads(value)
        except ValueError as e:
            raise ValueError(f"payload_template must be a JSON document: {e}")
    return value


class WebhookCreate(BaseModel):
    name: str
    description: Optional[str] = None
    url: HttpUrl
    method: HttpMethod = "POST"
    content_type: str = "application/json"
    auth_type: AuthType = "none"
    auth_token: Optional[str] = None
    auth_username: Optional[str] = None
    auth_password: Optional[str] = None
    auth_header_name: Optional[str] = None
    secret: Optional[str] = None
    timeout: int = Field(default=30, ge=1, le=MAX_TIMEOUT_SECONDS)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    rate_limit_per_minute: int = Field(default=30, ge=1)
    enabled_events: List[str] = Field(default_factory=list)
    # {"data.path": value or [values]}; every entry must match the event data
    event_filters: Optional[Dict[str, Any]] = None
    payload_template: Optional[str] = None
    custom_headers: Optional[Dict[str, str]] = None
    is_enabled: bool = True

    @field_validator("payload_template")
    @classmethod
    def valid_payload_template(cls, value):
        return _check_payload_template(value)


class WebhookUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    url: Optional[HttpUrl] = None
    method: Optional[HttpMethod] = None
    content_type: Optional[str] = None
    auth_type: Optional[AuthType] = None
    auth_token: Optional[str] = None
    auth_username: Optional[str] = None
    auth_password: Optional[str] = None
    auth_header_name: Optional[str] = None
    secret: Optional[str] = None
    timeout: Optional[int] = Field(default=None, ge=1, le=MAX_TIMEOUT_SECONDS)
    retry_attempts: Optional[int] = Field(default=None, ge=1, le=10)
    rate_limit_per_minute: Optional[int] = Field(default=None, ge=1)
    enabled_events: Optional[List[str]] = None
    event_filters: Optional[Dict[str, Any]] = None
    payload_template: Optional[str] = None
    custom_headers: Optional[Dict[str, str]] = None
    is_enabled: Optional[bool] = None

    @field_validator("payload_template")
    @classmethod
    def valid_payload_template(cls, value):
        return _check_payload_template(value)


class WebhookResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    url: str
    method: str
    content_type: str
    auth_type: str
    has_secret: bool = False
    timeout: int
    retry_attempts: int
    rate_limit_per_minute: int
    enabled_events: List[str]
    event_filters: Optional[Dict[str, Any]]
    payload_template: Optional[str]
    custom_headers: Optional[Dict[str, str]]
    is_enabled: bool
    last_triggered: Optional[datetime]
    success_count: int
    failure_count: int
    created_by: Optional[UUID]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

    @classmethod
    def from_destination(cls, destination) -> "WebhookResponse":
        # Credentials and the signing secret never leave the service
        response = cls.model_validate(destination)
        response.has_secret = bool(destination.secret)
        return response


class WebhookTestResponse(BaseModel):
    success: bool
    status_code: Optional[int] = None
    response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
