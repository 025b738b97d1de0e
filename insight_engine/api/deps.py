from fastapi import Request

from insight_engine.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    """The ServiceContainer built in the application lifespan."""
    return request.app.state.container
