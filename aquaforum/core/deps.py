from fastapi import Request

from aquaforum.services.registry import Services


def get_services(request: Request) -> Services:
    return request.app.state.services
