"""
Request orchestration: wires providers, prompts, response processing and
conversations together for one request at a time.
"""

from .orchestrator import Orchestrator
from .types import ChatResult, StreamResult

__all__ = ["Orchestrator", "ChatResult", "StreamResult"]
