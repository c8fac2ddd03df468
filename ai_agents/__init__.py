from .services.refinement_agent import RefinementAgent, StaticConfigProvider
from .services.session_store import SessionStore

__all__ = [
    "RefinementAgent",
    "SessionStore",
    "StaticConfigProvider",
]
