from fastapi import Request

from app.services.dispatcher import NotificationDispatcher
from app.services.store import SqlNotificationStore


def get_store(request: Request) -> SqlNotificationStore:
    return request.app.state.store


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_http_transport(request: Request):
    """Outbound transport override; None outside tests."""
    return getattr(request.app.state, "http_transport", None)
