#!/usr/bin/env python3
"""
nvr-status - ask the service controller to start/stop/restart a camera agent
or report its state.

Usage examples:
  nvr-status status /nvr/cameras/camera-1.json
  nvr-status restart /nvr/cameras/camera-4.json --socket /run/nvr/server.socket
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from nvr_agent import config
from nvr_agent.control.status_client import COMMANDS, StatusClientError, camera_id_from_path, send_command

logger = logging.getLogger("nvr_status")


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description="Control per-camera NVR services",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("command", choices=COMMANDS, help="Service command")
    p.add_argument("camera_json", metavar="CAMERA_JSON", help="Path to camera-N.json")
    p.add_argument(
        "--socket",
        default=config.STATUS_SOCKET,
        metavar="PATH",
        help=f"Controller socket (default: {config.STATUS_SOCKET})",
    )
    p.add_argument("--debug", action="store_true", help="Enable DEBUG logging")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if not Path(args.camera_json).exists():
        logger.error(f"File {args.camera_json} not found")
        return 1

    camera_id = camera_id_from_path(args.camera_json)
    if camera_id is None:
        logger.error(f"{args.camera_json} is not a camera-N.json file")
        return 1

    try:
        response = send_command(args.command, camera_id, socket_path=args.socket)
    except StatusClientError as exc:
        logger.error(str(exc))
        return 1

    print(json.dumps(response))
    return 0 if "error" not in response else 1


if __name__ == "__main__":
    sys.exit(main())
