"""Shared fixtures."""

import logging

import pytest


def _is_barecdn_handler(handler):
    return getattr(handler, "_barecdn_handler", False) or getattr(handler, "_barecdn_file_handler", False)


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """Drop handlers installed by configure_logging and main() after each test."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if _is_barecdn_handler(handler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
