"""Argument parsing functionality for pkgflow."""

import argparse
from constants import Constants, TieBreak

def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    parser = argparse.ArgumentParser(
        prog="pkgflow",
        description=(
            "pkgflow - Resolve, lock and install project dependencies into __pypackages__"
        ),
        add_help=True,
    )

    parser.add_argument("action",
                        help="install: resolve, lock and install; lock: resolve and write the lockfile only; "
                             "list: show installed packages",
                        choices=["install", "lock", "list"],
                        nargs="?",
                        default="install")
    parser.add_argument("-C", "--project",
                        dest="PROJECT_DIR",
                        help="Project directory (default: current directory)",
                        action="store",
                        type=str,
                        default=".")
    parser.add_argument("-r", "--requirements",
                        dest="REQUIREMENTS",
                        help=f"Read direct requirements from a requirements file instead of {Constants.MANIFEST_FILE}",
                        action="store",
                        type=str)
    parser.add_argument("--dev",
                        dest="DEV",
                        help="Also install dev-dependencies",
                        action="store_true")
    parser.add_argument("--python",
                        dest="PY_VERSION",
                        help="Target Python version (X.Y); overrides the manifest",
                        action="store",
                        type=str)

    parser.add_argument("--index-url",
                        dest="INDEX_URL",
                        help="Base URL of a PyPI-compatible JSON index",
                        action="store",
                        type=str)
    parser.add_argument("--cache-dir",
                        dest="CACHE_DIR",
                        help="Directory for metadata and artifact caches",
                        action="store",
                        type=str)
    parser.add_argument("--max-workers",
                        dest="MAX_WORKERS",
                        help="Concurrent metadata and install workers",
                        action="store",
                        type=int)
    parser.add_argument("--tie-break",
                        dest="TIE_BREAK",
                        help="Choice among equally ranked artifacts",
                        action="store",
                        type=str.lower,
                        choices=[t.value for t in TieBreak])

    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        default='INFO')
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to configuration file (YAML)",
                        action="store",
                        type=str)

    return parser.parse_args(argv)
