"""
polish - Closed-loop code quality improvement.

Score a codebase, let an agent fix one thing at a time, keep only what helps.
"""

from polish.config import PolishConfig, load_config
from polish.session import run_session

__version__ = "0.1.0"
__all__ = ["PolishConfig", "load_config", "run_session", "__version__"]
