from typing import Annotated

from fastapi import Depends, Request

from greeter.bootstrap import Services


def get_services(request: Request) -> Services:
    """Services opened by the application lifespan."""
    services: Services = request.app.state.services
    return services


# Type alias for dependency injection
AppServices = Annotated[Services, Depends(get_services)]
