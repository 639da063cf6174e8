#!/usr/bin/env python3
"""
NVR Camera Agent - per-camera entry point.

Runs two independent workers for one camera, each in its own thread with its
own GLib main context:
  recorder: primary stream -> rotating MP4 segments + periodic snapshots
  relay:    secondary stream -> H.264 RTP on localhost, registered with Janus

If either worker stops on its own (retry bound exceeded, relay unreachable,
fatal pipeline error) the other is stopped too and the process exits 1, so
the service manager can restart it.

Usage examples:
  nvr-agent /nvr/cameras/camera-1.json
  nvr-agent /nvr/cameras/camera-1.json --mode record
  nvr-agent /nvr/cameras/camera-2.json --mode stream --debug
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from typing import Optional

import gi
gi.require_version('Gst', '1.0')
from gi.repository import Gst

from nvr_agent import config
from nvr_agent.pipeline.orchestrator import RelayOrchestrator
from nvr_agent.recording.segment_recorder import SegmentRecorder
from nvr_agent.utils.camera_loader import CameraConfig, load_camera_config
from nvr_agent.utils.utils import log_path

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
SHUTDOWN_TIMEOUT_S = config.EOS_TIMEOUT_S + config.RELOCATE_TIMEOUT_S + config.SIGNALING_TIMEOUT_S + 5

logger = logging.getLogger('nvr_agent')


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def configure_logging(level: str = config.LOG_LEVEL, camera: Optional[CameraConfig] = None):
    """
    Console logging, plus a rotating file at <root>/logs/<camera_id>/log.txt
    when not running under systemd (which already captures stdout).
    """
    root = logging.getLogger()
    root.setLevel(level)

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(console)

    if camera is None or os.getenv('INVOCATION_ID'):
        return

    path = log_path(camera.output_path, camera.camera_id)
    file_handler = RotatingFileHandler(
        path, maxBytes=config.LOG_MAX_BYTES, backupCount=config.LOG_BACKUP_COUNT
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)
    logger.info(f"Logging to {path}")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description="Per-camera NVR agent (recording + live relay)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("camera_json", metavar="CAMERA_JSON", help="Path to camera-N.json")
    p.add_argument(
        "--mode",
        choices=["all", "record", "stream"],
        default="all",
        help="Workers to run: recording, live relay or both (default: all)",
    )
    p.add_argument(
        "--debug",
        action="store_true",
        help="Enable DEBUG logging and GST_DEBUG=3",
    )
    return p.parse_args(argv)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def run_workers(workers) -> bool:
    """
    Start workers, wait until one finishes or a signal arrives, then stop
    the rest.

    Returns:
        True if every worker stopped cleanly
    """
    shutdown = threading.Event()

    def _signal_handler(signum, frame):
        logger.info(f"Signal {signum} received, stopping workers")
        shutdown.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    for worker in workers:
        worker.start_in_thread()

    while not shutdown.is_set():
        finished = [w for w in workers if w.done.is_set()]
        if finished:
            for worker in finished:
                logger.error(f"{type(worker).__name__} stopped unexpectedly")
            break
        shutdown.wait(0.5)

    for worker in workers:
        worker.stop()

    all_ok = shutdown.is_set()
    for worker in workers:
        if not worker.wait(timeout=SHUTDOWN_TIMEOUT_S):
            logger.error(f"{type(worker).__name__} did not stop cleanly")
            all_ok = False
    return all_ok


def main(argv=None):
    args = parse_args(argv)

    if args.debug:
        os.environ.setdefault("GST_DEBUG", "3")
    configure_logging("DEBUG" if args.debug else config.LOG_LEVEL)

    try:
        camera = load_camera_config(args.camera_json)
    except (FileNotFoundError, ValueError) as exc:
        logger.error(f"Cannot load camera configuration: {exc}")
        sys.exit(1)

    configure_logging("DEBUG" if args.debug else config.LOG_LEVEL, camera)
    logger.info(f"Config: {json.dumps(config.get_config_summary(), indent=2, default=str)}")
    logger.info(f"Camera {camera.camera_id} ({camera.name}) at {camera.ip_address}, mode={args.mode}")

    Gst.init(None)

    workers = []
    if args.mode in ("all", "record"):
        workers.append(SegmentRecorder(camera))
    if args.mode in ("all", "stream"):
        workers.append(RelayOrchestrator(camera))

    ok = run_workers(workers)
    logger.info("Agent stopped" if ok else "Agent stopped after a fatal error")
    sys.exit(0 if ok else 1)


if __name__ == '__main__':
    main()
