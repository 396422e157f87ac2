"""
DualVal

Node-level dual validation of generated assessment content, with feedback,
selective re-evaluation, disagreement handling and continuous learning.
"""

__version__ = "0.1.0"
__author__ = "DualVal Team"

from dualval.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
