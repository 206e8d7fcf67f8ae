"""
Parameter directives — the positional arguments of amdovc.

Token grammar:

  NAME[:[ADAPTERS][:LEVEL]]=VALUE|default

  coreclk[:[ADAPTERS][:LEVEL]]=CLOCK    core clock in MHz
  memclk[:[ADAPTERS][:LEVEL]]=CLOCK     memory clock in MHz
  coreod[:[ADAPTERS][:LEVEL]]=PERCENT   core overdrive in percent (AMDGPU)
  memod[:[ADAPTERS][:LEVEL]]=PERCENT    memory overdrive in percent (AMDGPU)
  vcore[:[ADAPTERS][:LEVEL]]=VOLTAGE    Vddc voltage in volts
  icoreclk[:ADAPTERS]=CLOCK             core clock of the idle level
  imemclk[:ADAPTERS]=CLOCK              memory clock of the idle level
  ivcore[:ADAPTERS]=VOLTAGE             Vddc voltage of the idle level
  fanspeed[:[ADAPTERS][:THID]]=PERCENT  fan speed (THID must be 0)

ADAPTERS defaults to adapter 0 (not 'all'). LEVEL defaults to the last
performance level of each adapter, resolved later against the capability
snapshot. 'default' restores the driver default (for fanspeed: automatic
fan control).

parse_directive() turns one token into an immutable Directive or raises
DirectiveSyntaxError. parse_directives() parses a whole argv list and
reports every bad token at once.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum

from amdovc.lib.errors import (
    BatchParseError,
    DirectiveSyntaxError,
    SelectorSyntaxError,
)
from amdovc.lib.selectors import DEFAULT_SELECTION, DeviceSelection, parse_selection


class ParameterKind(Enum):
    """What a directive changes. Value = (label, unit)."""

    CORE_CLOCK = ("core clock", "MHz")
    MEMORY_CLOCK = ("memory clock", "MHz")
    VOLTAGE = ("Vddc voltage", "V")
    FAN_SPEED = ("fan speed", "%")
    CORE_OVERDRIVE = ("core overdrive", "")
    MEMORY_OVERDRIVE = ("memory overdrive", "")

    @property
    def label(self) -> str:
        return self.value[0]

    @property
    def unit(self) -> str:
        return self.value[1]


class LevelPolicy(Enum):
    """How the level of a directive is chosen when none was typed."""

    LAST = "last"                              # last performance level of the adapter
    IDLE = "idle"                              # level 0, cannot be overridden
    THERMAL_CONTROLLER = "thermal-controller"  # controller 0, may be overridden


@dataclass(frozen=True)
class ParamName:
    kind: ParameterKind
    policy: LevelPolicy

    @property
    def accepts_level(self) -> bool:
        return self.policy is not LevelPolicy.IDLE


PARAMETER_NAMES: dict[str, ParamName] = {
    "coreclk": ParamName(ParameterKind.CORE_CLOCK, LevelPolicy.LAST),
    "memclk": ParamName(ParameterKind.MEMORY_CLOCK, LevelPolicy.LAST),
    "coreod": ParamName(ParameterKind.CORE_OVERDRIVE, LevelPolicy.LAST),
    "memod": ParamName(ParameterKind.MEMORY_OVERDRIVE, LevelPolicy.LAST),
    "vcore": ParamName(ParameterKind.VOLTAGE, LevelPolicy.LAST),
    "icoreclk": ParamName(ParameterKind.CORE_CLOCK, LevelPolicy.IDLE),
    "imemclk": ParamName(ParameterKind.MEMORY_CLOCK, LevelPolicy.IDLE),
    "ivcore": ParamName(ParameterKind.VOLTAGE, LevelPolicy.IDLE),
    "fanspeed": ParamName(ParameterKind.FAN_SPEED, LevelPolicy.THERMAL_CONTROLLER),
}

# Leading signed integer, possibly empty (an empty LEVEL keeps the default).
_LEVEL_RE = re.compile(r"[+-]?[0-9]*")
# Leading decimal number, including the spellings float() gives inf/nan for.
_NUMBER_RE = re.compile(
    r"[+-]?(?:inf(?:inity)?|nan|(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Directive:
    """One parsed parameter token.

    level is None until resolved: the policy decides what it becomes.
    value is None for 'default'.
    """

    kind: ParameterKind
    name: str
    selection: DeviceSelection
    level: int | None
    policy: LevelPolicy
    value: float | None
    source_text: str

    @property
    def use_default(self) -> bool:
        return self.value is None

    def resolve_level(self, level_count: int) -> int:
        """Concrete level (or thermal controller) for one adapter."""
        if self.level is not None:
            return self.level
        if self.policy is LevelPolicy.LAST:
            return level_count - 1
        return 0

    def describe_value(self) -> str:
        """'default', or the value with its unit: '900 MHz', '1.1 V', '70%'."""
        if self.value is None:
            return "default"
        unit = self.kind.unit
        if unit == "%":
            return f"{self.value:g}%"
        if unit:
            return f"{self.value:g} {unit}"
        return f"{self.value:g}"


def _fail(message: str, token: str) -> DirectiveSyntaxError:
    return DirectiveSyntaxError(message, token)


def parse_directive(token: str) -> Directive:
    """Parse one NAME[:ADAPTERS[:LEVEL]]=VALUE token."""
    colon = token.find(":")
    pos = colon if colon >= 0 else token.find("=")
    if pos < 0:
        raise _fail(f"This is not a parameter: '{token}'!", token)

    name = token[:pos]
    param = PARAMETER_NAMES.get(name)
    if param is None:
        raise _fail(f"Wrong parameter name in '{token}'!", token)

    selection = DEFAULT_SELECTION
    level: int | None = None

    # ── ADAPTERS ──
    if token[pos] == ":":
        pos += 1
        end = len(token)
        for sep in (":", "="):
            found = token.find(sep, pos)
            if found >= 0:
                end = found
                break
        if end != pos:
            try:
                selection = parse_selection(token[pos:end])
            except SelectorSyntaxError as e:
                raise _fail(f"Unable to parse adapter list for '{token}': {e}", token) from e
            pos = end

    # ── LEVEL / THID ──
    if pos < len(token) and token[pos] == ":" and param.accepts_level:
        pos += 1
        m = _LEVEL_RE.match(token, pos)
        digits = m.group(0)
        if digits in ("+", "-"):
            raise _fail(f"Unable to parse level in '{token}'!", token)
        if digits:
            level = int(digits)
        pos = m.end()

    # ── VALUE ──
    if pos >= len(token) or token[pos] != "=":
        raise _fail(f"Unterminated parameter '{token}'!", token)
    rest = token[pos + 1:]

    value: float | None
    if rest == "default":
        value = None
    else:
        m = _NUMBER_RE.match(rest)
        if m is None:
            raise _fail(f"Unable to parse value in '{token}'!", token)
        value = float(m.group(0))
        if not math.isfinite(value):
            raise _fail(f"Value of '{token}' is not finite!", token)
        if m.end() != len(rest):
            raise _fail(f"Garbage in '{token}'!", token)

    return Directive(
        kind=param.kind,
        name=name,
        selection=selection,
        level=level,
        policy=param.policy,
        value=value,
        source_text=token,
    )


def parse_directives(tokens: list[str]) -> list[Directive]:
    """Parse every token. Raises BatchParseError listing all failures."""
    directives: list[Directive] = []
    errors: list[DirectiveSyntaxError] = []
    for token in tokens:
        try:
            directives.append(parse_directive(token))
        except DirectiveSyntaxError as e:
            errors.append(e)
    if errors:
        raise BatchParseError(errors)
    return directives
