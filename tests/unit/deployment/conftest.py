# SPDX-License-Identifier: MIT
from __future__ import annotations

from _rollout_fakes import fake_clock, make_harness  # noqa: F401
