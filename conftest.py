# SPDX-License-Identifier: MIT
"""Pytest environment setup.

Ensures the repository root is importable so tests resolve the in-tree
packages without installing them, and keeps metrics from one test out of
the next by resetting the process-wide collector.
"""

from __future__ import annotations

import pathlib
import sys

import pytest
from prometheus_client import CollectorRegistry

import core.utils.metrics as metrics_module

ROOT = pathlib.Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _isolated_metrics(monkeypatch: pytest.MonkeyPatch) -> metrics_module.MetricsCollector:
    collector = metrics_module.MetricsCollector(registry=CollectorRegistry())
    monkeypatch.setattr(metrics_module, "_collector", collector)
    return collector
