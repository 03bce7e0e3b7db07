"""
Response post-processing: action tags, code blocks, stream finalization and
file-action execution.
"""

from .actions import ExtractionResult, extract_action_tags
from .file_actions import FileActionExecutor, LocalFileActionExecutor, process_file_operations
from .response_processor import LRUCache, ResponseProcessor, extract_code_blocks, validate_code

__all__ = [
    "ExtractionResult",
    "extract_action_tags",
    "extract_code_blocks",
    "validate_code",
    "FileActionExecutor",
    "LocalFileActionExecutor",
    "process_file_operations",
    "LRUCache",
    "ResponseProcessor",
]
