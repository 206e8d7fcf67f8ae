"""
Exception hierarchy for amdovc.

Three families, matching the three stages of a run:

  ParseError       — a selector or parameter token is malformed. Raised per
                     token; the CLI collects all of them before giving up.
  ValidationError  — the parsed batch does not fit the hardware. Carries
                     every Violation found, never just the first one.
  BackendError     — a driver read/write failed. Fatal for the rest of the
                     commit phase. Writes already issued are not rolled back.
"""

from __future__ import annotations

from dataclasses import dataclass


class OverdriveError(Exception):
    """Base class for every error amdovc raises on purpose."""


# ── Parsing ─────────────────────────────────────────────────────────────────

class ParseError(OverdriveError, ValueError):
    """Malformed command-line input."""


class SelectorSyntaxError(ParseError):
    """Adapter list such as '0,2-4' could not be parsed."""


class DirectiveSyntaxError(ParseError):
    """Parameter token such as 'coreclk:0:1=900' could not be parsed.

    `token` is the full offending argument, echoed in the message.
    """

    def __init__(self, message: str, token: str):
        super().__init__(message)
        self.token = token


class BatchParseError(ParseError):
    """One or more tokens of a batch failed to parse."""

    def __init__(self, errors: list[DirectiveSyntaxError]):
        super().__init__("Unable to parse parameters")
        self.errors = errors


# ── Validation ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Violation:
    """One reason a directive cannot be applied."""

    message: str       # e.g. "Core clock out of range"
    source_text: str   # the directive token as typed

    def __str__(self) -> str:
        return f"{self.message} in '{self.source_text}'!"


class ValidationError(OverdriveError):
    """The batch failed validation. Nothing has been applied."""

    def __init__(self, violations: list[Violation]):
        super().__init__("Error in parameters. No settings have been applied.")
        self.violations = violations


# ── Backend ─────────────────────────────────────────────────────────────────

class BackendError(OverdriveError):
    """A driver call or sysfs access failed."""


class BackendUnavailable(BackendError):
    """The requested backend cannot be used on this machine."""
