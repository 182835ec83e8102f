#!/usr/bin/env python
"""Reconcile worker and plan state after a scheduler crash.

Stop the API process first; the scheduler must not run concurrently.
"""
from __future__ import annotations

import sys

from flightops.workers.recovery import main

if __name__ == "__main__":
    sys.exit(main())
