"""amdovc — AMD Overdrive control from the console.

cli/ = command-line entry point and handlers
lib/ = directive grammar, validation, apply engine and the two backends
"""

__version__ = "0.4.0"
