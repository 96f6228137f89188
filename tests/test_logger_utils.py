"""Unit tests for logging utilities."""

import logging

import pytest
from colorama import Fore

from scalellm.utils.logger_utils import (ROOT_LOGGER_NAME, ColorfulFormatter,
                                         get_logger, set_log_level)


class TestGetLogger:
    """Test cases for get_logger."""

    def test_module_loggers_hang_off_root(self) -> None:
        logger = get_logger('scalellm.engine.scheduler')

        assert logger.name == 'scalellm.engine.scheduler'
        assert logger.propagate
        assert logger.handlers == []
        assert logging.getLogger(ROOT_LOGGER_NAME).handlers

    def test_foreign_names_are_prefixed(self) -> None:
        logger = get_logger('plugins.custom')
        assert logger.name == 'scalellm.plugins.custom'

    def test_same_logger_returned(self) -> None:
        assert get_logger('scalellm.a') is get_logger('scalellm.a')

    def test_invalid_file_mode(self) -> None:
        with pytest.raises(ValueError):
            get_logger('scalellm.b', file_mode='x')

    def test_set_log_level(self) -> None:
        root = get_logger(ROOT_LOGGER_NAME)
        previous = root.level
        try:
            set_log_level('debug')
            assert root.level == logging.DEBUG
            assert get_logger('scalellm.c').isEnabledFor(logging.DEBUG)
            set_log_level(logging.WARNING)
            assert not get_logger('scalellm.c').isEnabledFor(logging.INFO)
        finally:
            root.setLevel(previous)


class TestColorfulFormatter:
    """Test cases for the colored formatter."""

    def test_level_colors(self) -> None:
        formatter = ColorfulFormatter('%(levelname)s: %(message)s')
        record = logging.LogRecord('scalellm', logging.ERROR, __file__, 1,
                                   'failed', None, None)

        message = formatter.format(record)

        assert message.startswith(Fore.RED)
        assert message.endswith(Fore.RESET)
        assert 'ERROR: failed' in message
