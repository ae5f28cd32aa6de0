"""pkgflow: resolve, lock and install Python project dependencies.

Raises:
    SystemExit: With an ExitCodes value describing the outcome.
"""

import dataclasses
import logging
import sys
from pathlib import Path

from args import parse_args
from constants import Constants, ExitCodes, _load_yaml_config, apply_config
from common.errors import (
    IntegrityError,
    InstallError,
    LockfileError,
    ManifestError,
    MetadataError,
    NetworkError,
    NoCompatibleArtifactError,
    PackageNotFoundError,
    PkgflowError,
    UnsatisfiableConstraintsError,
)
from common.logging_utils import configure_logging, extra_context, is_debug_enabled
from installer.installer import Installer
from manifest.model import Manifest
from manifest.pyproject import load_pyproject
from manifest.requirements_txt import load_requirements_txt
from provision import Provisioner, package_root

logger = logging.getLogger(__name__)

# Most specific first; PackageNotFoundError must precede its MetadataError base.
_EXIT_CODES = (
    (UnsatisfiableConstraintsError, ExitCodes.RESOLUTION_ERROR),
    (PackageNotFoundError, ExitCodes.RESOLUTION_ERROR),
    (NoCompatibleArtifactError, ExitCodes.RESOLUTION_ERROR),
    (IntegrityError, ExitCodes.INTEGRITY_ERROR),
    (NetworkError, ExitCodes.CONNECTION_ERROR),
    (MetadataError, ExitCodes.CONNECTION_ERROR),
    (InstallError, ExitCodes.INSTALL_ERROR),
    (ManifestError, ExitCodes.FILE_ERROR),
    (LockfileError, ExitCodes.FILE_ERROR),
)


def exit_code_for(error: PkgflowError) -> ExitCodes:
    for cls, code in _EXIT_CODES:
        if isinstance(error, cls):
            return code
    return ExitCodes.CONNECTION_ERROR


def apply_cli_overrides(args) -> None:
    """CLI flags win over YAML configuration and environment variables."""
    if args.INDEX_URL:
        Constants.INDEX_URL = args.INDEX_URL
    if args.CACHE_DIR:
        Constants.CACHE_DIR = args.CACHE_DIR
    if args.MAX_WORKERS:
        Constants.MAX_WORKERS = int(args.MAX_WORKERS)
    if args.TIE_BREAK:
        Constants.ARTIFACT_TIE_BREAK = args.TIE_BREAK


def load_manifest(args) -> Manifest:
    project_dir = Path(args.PROJECT_DIR)
    if args.REQUIREMENTS:
        manifest = load_requirements_txt(project_dir / args.REQUIREMENTS, python_version=args.PY_VERSION)
    else:
        manifest = load_pyproject(project_dir / Constants.MANIFEST_FILE)
    if args.PY_VERSION and manifest.python_version != args.PY_VERSION:
        manifest = dataclasses.replace(manifest, python_version=args.PY_VERSION)
    return manifest


def run(args) -> ExitCodes:
    manifest = load_manifest(args)
    project_dir = Path(args.PROJECT_DIR)
    if args.action == "list":
        root = package_root(project_dir, manifest.python_version)
        for entry in Installer.installed(root):
            print(f"{entry.name}=={entry.version}")
        return ExitCodes.SUCCESS

    provisioner = Provisioner(include_dev=args.DEV)
    if args.action == "lock":
        lockfile = provisioner.lock(manifest, project_dir)
        logging.info("Locked %d packages.", len(lockfile.packages))
        return ExitCodes.SUCCESS

    report = provisioner.sync(manifest, project_dir)
    for item in report.installed:
        logging.info("Installed %s", item)
    for item in report.removed:
        logging.info("Removed %s", item)
    for name, message in sorted(report.failures.items()):
        logging.error("%s: %s", name, message)
    return ExitCodes.SUCCESS if report.ok else ExitCodes.INSTALL_ERROR


def main(argv=None):
    """Main function of the program."""
    args = parse_args(argv)
    configure_logging(args.LOG_LEVEL, args.LOG_FILE)
    apply_config(_load_yaml_config(args.CONFIG))
    apply_cli_overrides(args)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.action),
        )

    try:
        code = run(args)
    except PkgflowError as e:
        logging.error("%s", e)
        code = exit_code_for(e)
    except KeyboardInterrupt:
        logging.error("Interrupted.")
        code = ExitCodes.INSTALL_ERROR
    sys.exit(code.value)


if __name__ == "__main__":
    main()
