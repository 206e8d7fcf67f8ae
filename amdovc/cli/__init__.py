"""amdovc.cli — command-line interface modules.

main.py      = Entry point + argument parsing
info.py      = Read-only adapter information (short / verbose)
overdrive.py = Validate and apply Overdrive parameters
"""
