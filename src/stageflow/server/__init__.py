from .app import create_app
from .store import RunStore

__all__ = ["RunStore", "create_app"]
