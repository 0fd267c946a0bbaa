"""Stable exit codes for CI integration."""
from __future__ import annotations

from enum import Enum

from ..errors import (
    BaselineTestFailureError,
    ConfigError,
    CumulativeRegressionError,
    DirtyWorkspaceError,
    IncompleteProposalError,
    MalformedInputError,
    SafePatchError,
)


class ExitCode(Enum):
    """
    Stable exit codes for CI integration.

    These codes MUST NOT change between minor versions.
    New codes may be added, but existing codes are immutable.
    """
    DONE = 0                    # Run reached DONE, every attempted unit verified
    USAGE = 2                   # Bad arguments or configuration
    DIRTY_WORKSPACE = 10        # Uncommitted changes since the last checkpoint
    BASELINE_FAILED = 11        # Tests fail before any change
    INCOMPLETE_PROPOSAL = 12    # A finding has no unit and no deferral
    CUMULATIVE_REGRESSION = 13  # Verified units fail together
    ABORTED = 14                # Cancelled or checkpoint failure
    UNITS_NOT_VERIFIED = 15     # DONE, but some units were reverted or failed
    MALFORMED = 20              # Parse error or malformed input


_ERROR_CODES = (
    (DirtyWorkspaceError, ExitCode.DIRTY_WORKSPACE),
    (BaselineTestFailureError, ExitCode.BASELINE_FAILED),
    (IncompleteProposalError, ExitCode.INCOMPLETE_PROPOSAL),
    (CumulativeRegressionError, ExitCode.CUMULATIVE_REGRESSION),
    (MalformedInputError, ExitCode.MALFORMED),
    (ConfigError, ExitCode.USAGE),
)


def exit_code_for(error: BaseException) -> ExitCode:
    for error_type, code in _ERROR_CODES:
        if isinstance(error, error_type):
            return code
    if isinstance(error, SafePatchError):
        return ExitCode.ABORTED
    raise error


__all__ = ["ExitCode", "exit_code_for"]
