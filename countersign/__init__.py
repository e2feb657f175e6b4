"""
Countersign

Signing workflow engine, trusted timestamp composites and fine-grained
authorization for electronic signature platforms.
"""

__version__ = "1.0.0"

from .core.config import Config
from .core.engine import Countersign
from .core.exceptions import CountersignError, ErrorKind

__all__ = [
    "Config",
    "Countersign",
    "CountersignError",
    "ErrorKind",
    "__version__",
]
