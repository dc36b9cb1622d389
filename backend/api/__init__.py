from api.server import (
    Services,
    build_services,
    create_app,
)

__all__ = [
    "Services",
    "build_services",
    "create_app",
]
