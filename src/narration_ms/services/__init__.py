"""
narration-ms Services Layer.

    - narration_service.py: NarrationManager, the single entry point that
      wires synthesis, admission, the backlog and autoplay recovery together.
"""
from .narration_service import NarrationManager, get_manager, reset_manager

__all__ = ["NarrationManager", "get_manager", "reset_manager"]
