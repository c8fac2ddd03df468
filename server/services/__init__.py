from .app_config_service import AppConfigService
from .refinement_service import RefinementService, build_transport

__all__ = [
    "AppConfigService",
    "RefinementService",
    "build_transport",
]
