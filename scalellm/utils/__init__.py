"""Utility modules for scalellm.

Modules:
    logger_utils: Colored, hierarchical logging for the serving core
"""

from scalellm.utils.logger_utils import get_logger, set_log_level

__all__ = ['get_logger', 'set_log_level']
