from typing import Any, Mapping, Optional

from sqlalchemy import Column, String, Text, TIMESTAMP, Integer, Boolean, Uuid
import uuid

from app.models.base import Base, JSONType, utcnow
from app.utils.templating import lookup


class WebhookDestination(Base):
    __tablename__ = "webhook_destinations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    url = Column(String(2048), nullable=False)
    method = Column(String(10), nullable=False, default="POST")  # POST, PUT, PATCH
    content_type = Column(String(100), nullable=False, default="application/json")

    # Authentication: none, bearer, basic, api_key
    auth_type = Column(String(20), nullable=False, default="none")
    auth_token = Column(Text, nullable=True)
    auth_username = Column(String(200), nullable=True)
    auth_password = Column(Text, nullable=True)
    auth_header_name = Column(String(100), nullable=True)

    secret = Column(Text, nullable=True)  # HMAC signing secret
    timeout = Column(Integer, nullable=False, default=30)  # seconds
    retry_attempts = Column(Integer, nullable=False, default=3)
    rate_limit_per_minute = Column(Integer, nullable=False, default=30)

    enabled_events = Column(JSONType, nullable=False, default=list)
    event_filters = Column(JSONType, nullable=True)  # {"data.path": value or [values]}
    payload_template = Column(Text, nullable=True)  # JSON body with {{placeholders}}
    custom_headers = Column(JSONType, nullable=True)

    is_enabled = Column(Boolean, nullable=False, default=True)
    last_triggered = Column(TIMESTAMP, nullable=True)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)

    created_by = Column(Uuid(as_uuid=True), nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    def subscribes_to(self, event_type: str, data: Optional[Mapping[str, Any]] = None) -> bool:
        if event_type not in (self.enabled_events or []):
            return False
        for path, expected in (self.event_filters or {}).items():
            actual = lookup(path, data or {})
            allowed = expected if isinstance(expected, list) else [expected]
            if actual not in allowed:
                return False
        return True

    def __repr__(self):
        return f"<WebhookDestination(id='{self.id}', name='{self.name}', enabled={self.is_enabled})>"
