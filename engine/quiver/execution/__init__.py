from .engine import ExecutionEngine
from .builtins import split_builtin
from .extractors import is_path_safe, uncompress
from .netbridge import NetbridgeIdentification, NetbridgeProcessor, NetbridgeResult

__all__ = [
    "ExecutionEngine",
    "split_builtin",
    "is_path_safe",
    "uncompress",
    "NetbridgeIdentification",
    "NetbridgeProcessor",
    "NetbridgeResult",
]
