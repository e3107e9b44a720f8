"""通用工具"""

from .logging import setup_logging

__all__ = ["setup_logging"]
