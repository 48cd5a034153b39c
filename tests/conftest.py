# SPDX-License-Identifier: MIT
from __future__ import annotations

import logging
from typing import Iterator

import pytest


@pytest.fixture()
def restore_root_logging() -> Iterator[None]:
    """Undo handler changes made by ``configure_logging`` inside a test."""

    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    try:
        yield
    finally:
        root.handlers[:] = handlers
        root.setLevel(level)
