#!/usr/bin/env python3
"""
scratchvol CLI - disposable encrypted volumes

Commands:
- new:    create, mount and secure an encrypted volume
- import: import an encrypted archive into a new volume
- list:   list attached volumes and their expiry
- eject:  eject all, expired, or one specific volume
- cron:   install or remove the hourly "eject --expired" job
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import secrets
import shutil
import sys
from typing import List, Optional

from . import constants, cron, creator, ejector, importer, logging_utils, scanner
from .archive import get_archiver
from .backends import get_backend
from .config import Config, ConfigError
from .errors import ArchiveExtractionFailed, VolumeError
from .models import All, ByTarget, ExpiredOnly, Named, Sized

logger = logging.getLogger(__name__)

STAGE_MESSAGES = {
    "create": "Creating encrypted image",
    "attach": "Attaching image",
    "secure": "Securing mounted volume",
    "extract": "Extracting archive",
    "done": "Volume ready",
}


def print_progress(stage: str, pct: int) -> None:
    print(f"[{pct:3d}%] {STAGE_MESSAGES.get(stage, stage)}")


def prompt_new_password(min_length: int) -> str:
    """Prompt twice for a new passphrase"""
    while True:
        passphrase = getpass.getpass(f"Passphrase for the new volume (min {min_length} chars): ")
        if len(passphrase) < min_length:
            print(f"Passphrase must be at least {min_length} characters")
            continue
        confirm = getpass.getpass("Confirm passphrase: ")
        if passphrase != confirm:
            print("Passphrases do not match")
            continue
        return passphrase


def report_volume(volume, keep_image: bool) -> None:
    if keep_image and volume.backing_image_path:
        print(f"Placed encrypted image at: {volume.backing_image_path}")
    print(f"Mounted encrypted volume at: {volume.mount_point}")
    if volume.expiry:
        print(f"Expires: {volume.expiry.date().isoformat()}")
    print(f'Eject with: scratchvol eject "{volume.mount_point}"')


def _backend(config: Config):
    backend = get_backend(config)
    backend.ensure_available()
    return backend


# ============================================================================
# Commands
# ============================================================================

def cmd_new(args, config: Config) -> int:
    """Create a new encrypted volume"""
    backend = _backend(config)
    size_mb = args.size if args.size is not None else config.default_size_mb
    days = args.days if args.days is not None else config.default_days

    if args.password:
        password = args.password
    elif not args.keep:
        # Nobody can reattach a volume whose image is deleted, so nobody needs the password.
        password = secrets.token_urlsafe(32)
    else:
        password = prompt_new_password(config.min_passphrase_length)

    if args.name:
        if args.days is not None:
            logger.warning("--days is ignored for named volumes")
        spec = Named(args.name, size_mb)
    else:
        spec = Sized(size_mb, days)

    volume = creator.create_volume(
        backend, spec, password, config.resolved_image_dir, progress_cb=print_progress
    )
    if not args.keep:
        creator.discard_image(volume)
    report_volume(volume, args.keep)
    return constants.EXIT_OK


def cmd_import(args, config: Config) -> int:
    """Import an encrypted archive into a new volume"""
    archiver = get_archiver(config.archiver)
    archiver.ensure_available()
    backend = _backend(config)

    password = args.password or getpass.getpass(f"Password for {args.path}: ")
    if not password:
        print("Error: Password cannot be empty", file=sys.stderr)
        return constants.EXIT_FAILURE

    try:
        volume = importer.import_archive(
            backend,
            archiver,
            args.path,
            password,
            ttl_days=args.days if args.days is not None else config.default_days,
            keep_image=args.keep,
            image_dir=config.resolved_image_dir,
            extra_mb=args.extra_size if args.extra_size is not None else config.import_extra_mb,
            size_factor=config.import_size_factor,
            volume_name=args.name,
            progress_cb=print_progress,
        )
    except ArchiveExtractionFailed as exc:
        print(f"Error: {exc}", file=sys.stderr)
        if exc.volume is not None:
            print(f"Volume left mounted at: {exc.volume.mount_point}", file=sys.stderr)
            print(f"Image kept at: {exc.volume.backing_image_path}", file=sys.stderr)
        return constants.EXIT_EXTRACTION_FAILED
    report_volume(volume, args.keep)
    return constants.EXIT_OK


def cmd_list(args, config: Config) -> int:
    """List attached encrypted volumes"""
    backend = _backend(config)
    volumes = scanner.scan(backend)

    if args.json:
        print(json.dumps([v.to_dict() for v in volumes], indent=2))
        return constants.EXIT_OK

    if not volumes:
        print("No encrypted volumes attached")
        return constants.EXIT_OK

    for volume in volumes:
        print(scanner.format_volume(volume, verbose=args.verbose))
    return constants.EXIT_OK


def cmd_eject(args, config: Config) -> int:
    """Eject encrypted volumes"""
    if args.all:
        policy = All()
    elif args.expired:
        policy = ExpiredOnly()
    else:
        policy = ByTarget(os.path.abspath(args.path))

    backend = _backend(config)
    outcomes = ejector.eject(backend, policy)

    if not outcomes:
        if isinstance(policy, ByTarget):
            print(f"No attached volume matches {args.path}")
        elif isinstance(policy, ExpiredOnly):
            print("No expired volumes")
        else:
            print("No encrypted volumes attached")
        return constants.EXIT_OK

    for outcome in outcomes:
        volume = outcome.volume
        kind = "expired volume" if volume.is_expired() else "volume"
        if outcome.ok:
            print(f"Ejected {kind} {volume.mount_point}")
        else:
            print(f"FAILED to eject {kind} {volume.mount_point}: {outcome.error}")

    if ejector.batch_failed(outcomes):
        failed = sum(1 for o in outcomes if not o.ok)
        print(f"{failed} of {len(outcomes)} volume(s) could not be ejected", file=sys.stderr)
        return constants.EXIT_FAILURE
    return constants.EXIT_OK


def _executable() -> str:
    return shutil.which("scratchvol") or os.path.realpath(sys.argv[0])


def cmd_cron(args, config: Config) -> int:
    """Install or uninstall the cron job"""
    executable = _executable()
    if args.install:
        changed = cron.install(executable, config.cron_schedule)
        print("Installed cron job" if changed else "Cron job already installed")
    else:
        changed = cron.uninstall(executable)
        print("Removed cron job" if changed else "No cron job installed")
    return constants.EXIT_OK


# ============================================================================
# Argument parsing
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scratchvol",
        description="scratchvol - disposable encrypted volumes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  scratchvol new                         New 100 MB volume, expires in 7 days
  scratchvol new --size 500 --days 1     Bigger volume that expires tomorrow
  scratchvol import secrets.zip          Import an encrypted archive
  scratchvol list -v                     Show volumes and expiry
  scratchvol eject --expired             Eject volumes past their expiry
""",
    )
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Enable verbose output')
    parser.add_argument('-c', '--config', help='Configuration file to load')

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    def add_image_options(sub):
        sub.add_argument('--days', type=int, default=None,
                         help='Days the volume is good to keep (default: 7)')
        sub.add_argument('-n', '--name',
                         help='Persistent volume name; named volumes never expire')
        sub.add_argument('-k', '--keep', action='store_true',
                         help='Keep the image file instead of deleting it after mounting')
        sub.add_argument('-p', '--password',
                         help='Password (not recommended, use interactive prompt)')

    new_parser = subparsers.add_parser('new', help='Create a new encrypted volume and mount it')
    add_image_options(new_parser)
    new_parser.add_argument('-s', '--size', type=int, default=None,
                            help='Size of the volume in megabytes (default: 100)')
    new_parser.set_defaults(func=cmd_new)

    import_parser = subparsers.add_parser('import', help='Import an encrypted archive as a new volume')
    add_image_options(import_parser)
    import_parser.add_argument('--extra-size', type=int, default=None,
                               help='Extra space on top of the archive contents in megabytes (default: 100)')
    import_parser.add_argument('path', help='Path of the archive to import')
    import_parser.set_defaults(func=cmd_import)

    list_parser = subparsers.add_parser('list', help='List attached encrypted volumes')
    list_parser.add_argument('-v', '--verbose', action='store_true',
                             help='Show image path and full expiry')
    list_parser.add_argument('-j', '--json', action='store_true',
                             help='Output in JSON format')
    list_parser.set_defaults(func=cmd_list)

    eject_parser = subparsers.add_parser('eject', help='Eject encrypted volumes')
    selection = eject_parser.add_mutually_exclusive_group(required=True)
    selection.add_argument('-a', '--all', action='store_true',
                           help='Eject all attached encrypted volumes')
    selection.add_argument('-e', '--expired', action='store_true',
                           help='Eject expired encrypted volumes')
    selection.add_argument('path', nargs='?',
                           help='Mount point or image path of the volume to eject')
    eject_parser.set_defaults(func=cmd_eject)

    cron_parser = subparsers.add_parser('cron', help='Install or uninstall the expiry cron job')
    cron_action = cron_parser.add_mutually_exclusive_group(required=True)
    cron_action.add_argument('--install', action='store_true', help='Install the cron job')
    cron_action.add_argument('--uninstall', action='store_true', help='Uninstall the cron job')
    cron_parser.set_defaults(func=cmd_cron)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return constants.EXIT_FAILURE

    logging_utils.setup_logging(logging.DEBUG if args.verbose else logging.WARNING)

    try:
        config = Config.load(args.config)
    except (ConfigError, OSError, ValueError) as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        return constants.EXIT_FAILURE

    try:
        return args.func(args, config)
    except KeyboardInterrupt:
        print("\nInterrupted")
        return constants.EXIT_INTERRUPTED
    except VolumeError as e:
        logging_utils.log_structured(
            logger,
            f"{args.command} failed",
            {constants.LOG_KEY_EVENT: constants.EVENT_ERROR, constants.LOG_KEY_RESULT: e.error_code},
            level=logging.DEBUG,
        )
        print(f"Error: {e}", file=sys.stderr)
        return constants.EXIT_FAILURE
    except Exception as e:
        logger.error(f"Error: {e}", exc_info=args.verbose)
        return constants.EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
