"""
devflash: device-flashing protocol engine.

Opens a serial/USB session with a phone's boot ROM or download agent,
negotiates the chipset's wire protocol, gets an agent running and performs
partition reads, writes and erases.
"""

__version__ = "0.4.0"

from .config import EngineConfig, load_config
from .engine import Engine
from .errors import FlashError
from .session import Session

__all__ = ["Engine", "EngineConfig", "FlashError", "Session", "load_config", "__version__"]
