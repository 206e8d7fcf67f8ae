"""
CLI overdrive — validate and apply a batch of parameters.

Command behavior:
  - print the safety warning
  - take one capability snapshot (adapter count, levels, ranges)
  - validate the whole batch; on any violation print all of them and
    apply nothing
  - otherwise preview every change, merge, and commit with one driver
    write per adapter

A driver error during commit stops the remaining writes. Writes that were
already issued are not rolled back; the message says so.
"""

from __future__ import annotations

import logging
import sys

from amdovc.lib.apply import apply_directives
from amdovc.lib.backend import CapabilitySnapshot
from amdovc.lib.errors import BackendError, ValidationError
from amdovc.lib.params import Directive
from amdovc.lib.validate import validate

log = logging.getLogger(__name__)

OVERDRIVE_WARNING = (
    "WARNING: Setting AMD Overdrive parameters!\n"
    "\n"
    "IMPORTANT NOTICE: Before any setting of AMD Overdrive parameters,\n"
    "please stop all GPU computations and GPU renderings.\n"
    "Please use this utility carefully, as it can damage your hardware.\n"
)


def cmd_overdrive(_args, directives: list[Directive], backend) -> int:
    """Handle PARAM mode."""
    print(OVERDRIVE_WARNING)

    caps = CapabilitySnapshot.take(backend)

    try:
        validate(directives, caps)
    except ValidationError as e:
        for violation in e.violations:
            print(violation, file=sys.stderr)
        print(e, file=sys.stderr)
        return 1

    try:
        report = apply_directives(directives, caps, backend)
    except BackendError as e:
        print(f"Error while applying settings: {e}", file=sys.stderr)
        print("Settings written before the error remain applied.", file=sys.stderr)
        return 1

    log.debug(
        "applied: fan on %s, levels on %s (%d warning(s))",
        report.fan_devices, report.level_devices, len(report.skipped),
    )
    return 0
