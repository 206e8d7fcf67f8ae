"""
CLI entry point — amdovc command.

One flat command line, two modes picked by whether PARAMs are given:

  amdovc [-a LIST] [-v]           →  cli/info.py       (read-only adapter info)
  amdovc PARAM [PARAM ...]        →  cli/overdrive.py  (validate + apply)

Usage examples:
    amdovc                                   short info, all adapters
    amdovc -a 1,2,4-6 -v                     verbose info, adapters 1, 2, 4..6
    amdovc coreclk:1=900 coreclk=1000        core clock 900 on adapter 1, 1000 on adapter 0
    amdovc coreclk:1:0=900 coreclk:0:1=1000  ... at explicit performance levels
    amdovc fanspeed=75 fanspeed:1=default    fan 75% on adapter 0, automatic on adapter 1
    amdovc vcore=1.111 vcore::0=0.81         Vddc on adapter 0, last level and level 0

Configuration (flags win over environment):
    --backend / AMDOVC_BACKEND     adl | amdgpu (default: ADL if present, else amdgpu)
    AMDOVC_SYSFS_ROOT              sysfs mount point (default /sys)
    AMDOVC_PCI_IDS                 explicit pci.ids path
    AMDOVC_LOG_DIR                 where the per-run log goes (default ~/.amdovc/logs)

Design: parameters are parsed before any driver is touched, so a typo never
needs root and never opens ADL. Backend modules are imported only by
open_backend(), so importing the CLI never dlopens libatiadlxx.so.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

from amdovc import __version__
from amdovc.lib.errors import BatchParseError, OverdriveError, SelectorSyntaxError
from amdovc.lib.params import parse_directives
from amdovc.lib.selectors import parse_selection

log = logging.getLogger("amdovc")

DEFAULT_LOG_DIR = Path.home() / ".amdovc" / "logs"


# ── Logging tee ─────────────────────────────────────────────────────────────
class _Tee:
    """Write to both a file and the original stream."""
    def __init__(self, stream, log_file):
        self._stream = stream
        self._log = log_file

    def write(self, data):
        self._stream.write(data)
        self._log.write(data)

    def flush(self):
        self._stream.flush()
        self._log.flush()

    def __getattr__(self, name):
        return getattr(self._stream, name)


def _init_log(command: str, log_dir: str | os.PathLike):
    """Tee stdout/stderr into <log_dir>/<command>_<timestamp>.log.

    Returns (log path, open file). The caller restores the streams and
    closes the file when the command is done.
    """
    os.makedirs(log_dir, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = os.path.join(log_dir, f"{command}_{stamp}.log")
    log_file = open(log_path, "w", encoding="utf-8")
    sys.stdout = _Tee(sys.stdout, log_file)
    sys.stderr = _Tee(sys.stderr, log_file)
    return log_path, log_file


def _setup_logging(debug: bool) -> None:
    """Backend debug records (every sysfs write, every ADL call) with --debug."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _adapter_list(text: str):
    try:
        return parse_selection(text)
    except SelectorSyntaxError as e:
        raise argparse.ArgumentTypeError(f"{e} in '{text}'") from e


PARAMS_HELP = """\
parameters:
  coreclk[:[ADAPTERS][:LEVEL]]=CLOCK    set core clock in MHz
  memclk[:[ADAPTERS][:LEVEL]]=CLOCK     set memory clock in MHz
  coreod[:[ADAPTERS][:LEVEL]]=PERCENT   set core Overdrive in percent (AMDGPU)
  memod[:[ADAPTERS][:LEVEL]]=PERCENT    set memory Overdrive in percent (AMDGPU)
  vcore[:[ADAPTERS][:LEVEL]]=VOLTAGE    set Vddc voltage in Volts (Catalyst)
  icoreclk[:ADAPTERS]=CLOCK             set core clock in MHz for idle level
  imemclk[:ADAPTERS]=CLOCK              set memory clock in MHz for idle level
  ivcore[:ADAPTERS]=VOLTAGE             set Vddc voltage in Volts for idle level
  fanspeed[:[ADAPTERS][:THID]]=PERCENT  set fanspeed by percentage

  ADAPTERS   adapter index list, e.g. 'all', '0-2', '0,1,3-5' (default 0)
  LEVEL      performance level (typically 0 or 1, default is last)
  THID       thermal controller index (must be 0)

Use 'default' in place of a value to restore the default. For fanspeed,
'default' switches back to automatic fan control.

WARNING: Before any setting of AMD Overdrive parameters, please stop any
processes doing GPU computations and renderings. Please use this utility
carefully, as it can damage your hardware.

If the X11 server is not running, this program requires root privileges.
"""


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="amdovc",
        description=(
            "AMD console Overdrive control. Prints adapter information if no "
            "parameters are given, sets Overdrive parameters otherwise."
        ),
        epilog=PARAMS_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
    )
    p.add_argument("-?", "-h", "--help", action="help", help="Show this help and exit")
    p.add_argument("-a", "--adapters", type=_adapter_list, default=None, metavar="LIST",
                   help="Print information only for these adapters")
    p.add_argument("-v", "--verbose", action="store_true", help="Print verbose information")
    p.add_argument("--backend", choices=("adl", "amdgpu"), default=None,
                   help="Force a driver backend (default: auto-detect)")
    p.add_argument("--debug", action="store_true", help="Log every driver call to stderr")
    p.add_argument("--no-log", action="store_true", help="Do not write a log file")
    p.add_argument("--version", action="version", version=f"amdovc {__version__}")
    p.add_argument("params", nargs="*", metavar="PARAM", help="Overdrive parameter (see below)")
    return p


def main(argv: list[str] | None = None) -> int:
    """Parse args and run info or overdrive mode.

    Returns 0 on success, 1 on parse/validation/driver errors. argparse
    usage errors exit with 2 before anything else happens.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.debug)

    try:
        directives = parse_directives(args.params)
    except BatchParseError as e:
        for err in e.errors:
            print(err, file=sys.stderr)
        print(e, file=sys.stderr)
        return 1

    cmd_name = "overdrive" if directives else "info"
    saved_streams = sys.stdout, sys.stderr
    log_file = None
    if not args.no_log:
        log_path, log_file = _init_log(cmd_name, os.environ.get("AMDOVC_LOG_DIR") or DEFAULT_LOG_DIR)
        ts = datetime.now().strftime("[%Y-%m-%d %H:%M:%S]")
        print(f"{ts} amdovc {cmd_name} | log: {log_path}")

    try:
        return _run(args, directives)
    finally:
        sys.stdout, sys.stderr = saved_streams
        if log_file is not None:
            log_file.close()


def _run(args, directives) -> int:
    from amdovc.lib.backend import open_backend
    from amdovc.lib.pci import PciDatabase

    sysfs_root = os.environ.get("AMDOVC_SYSFS_ROOT") or "/sys"
    prefer = args.backend or os.environ.get("AMDOVC_BACKEND") or None

    try:
        with PciDatabase(os.environ.get("AMDOVC_PCI_IDS") or None) as pci_db:
            backend = open_backend(sysfs_root=sysfs_root, pci_db=pci_db, prefer=prefer)
            try:
                if directives:
                    from amdovc.cli.overdrive import cmd_overdrive
                    return cmd_overdrive(args, directives, backend)

                from amdovc.cli.info import cmd_info
                return cmd_info(args, backend)
            finally:
                backend.close()
    except OverdriveError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
