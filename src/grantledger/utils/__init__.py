"""grantledger utilities: logging, config, invariants, canonical JSON.

Individual modules are imported directly by consumers, e.g.:
    from ..utils.logging_config import StructuredLogger
    from ..utils.config_loader import config_loader

config_loader and invariants import ledger.grants, so only the dependency-free
modules are re-exported here.
"""

from .logging_config import setup_logging, StructuredLogger, JSONFormatter
from .deterministic import canonical_json, metadata_json

__all__ = [
    "setup_logging", "StructuredLogger", "JSONFormatter",
    "canonical_json", "metadata_json",
]
