"""Implementation of the CLI for ambient-id."""

from __future__ import annotations

import argparse
import logging
import typing

from ambient_id import __version__
from ambient_id._impl import (
    DEFAULT_TIMEOUT,
    AmbientCredentialError,
    NoAmbientCredential,
    resolve,
)

if typing.TYPE_CHECKING:  # pragma: no cover
    from typing import NoReturn

logging.basicConfig(format="%(message)s", datefmt="[%X]", handlers=[logging.StreamHandler()])
_logger = logging.getLogger(__name__)
_logger.setLevel(logging.INFO)
_package_logger = logging.getLogger("ambient_id")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ambient-id",
        description="Print an ambient OIDC identity token for the given audience",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Run with additional debug logging; supply multiple times to increase verbosity",
    )

    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"ambient-id {__version__}",
    )

    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="Seconds to wait for a token request or agent process",
    )

    parser.add_argument(
        "audience",
        metavar="AUDIENCE",
        type=str,
        help="The audience (`aud` claim) to request the token for",
    )

    return parser


def _die(message: str) -> NoReturn:
    """Handle errors and terminate the program with an error code."""
    _logger.error(message)
    raise SystemExit(1)


def main() -> None:
    """Resolve and print the token."""
    parser = _parser()
    args: argparse.Namespace = parser.parse_args()

    if args.verbose >= 1:
        _package_logger.setLevel("DEBUG")
    if args.verbose >= 2:
        logging.getLogger().setLevel("DEBUG")

    _logger.debug(args)

    if args.timeout <= 0:
        _die("--timeout must be positive")

    try:
        token = resolve(args.audience, timeout=args.timeout)
    except NoAmbientCredential:
        _die("No ambient OIDC credential detected; is this running in a supported CI?")
    except AmbientCredentialError as e:
        _die(f"Failed to retrieve token: {e}")

    print(token)
