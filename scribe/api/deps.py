"""Request-scoped access to the shared service graph."""

from fastapi import Request

from scribe.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services
