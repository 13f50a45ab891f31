"""Components: the capability library, authentication and the HTTP component."""

from .auth import AuthConfig, AuthenticationManager, sign_request
from .http import HTTP_COMPONENT_ID, create_http_component
from .library import Component, ComponentLibrary, ComponentPort

__all__ = [
    "AuthConfig",
    "AuthenticationManager",
    "Component",
    "ComponentLibrary",
    "ComponentPort",
    "HTTP_COMPONENT_ID",
    "create_http_component",
    "sign_request",
]
