"""
ShareLink peer — command-line client.

Connects to a relay, registers a device id and then either waits for
incoming files or pairs with another device and sends files to it.
"""

import argparse
import asyncio
import logging

from config import RELAY_URL, SAVE_DIR
from session.coordinator import SessionCoordinator
from session.signaling_client import SignalingClient
from signaling.identity import validate_device_id

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ShareLink - peer-to-peer file transfer")
    parser.add_argument(
        "--relay",
        default=RELAY_URL,
        help=f"Relay websocket URL (default: {RELAY_URL})",
    )
    parser.add_argument("--device-id", help="Device id to register (default: random)")
    parser.add_argument("--connect", metavar="ID", help="Pair with this device id")
    parser.add_argument(
        "--send",
        nargs="+",
        metavar="FILE",
        help="Files to send once the connection is ready (requires --connect)",
    )
    parser.add_argument(
        "--save-dir",
        default=SAVE_DIR,
        help=f"Where received files are written (default: {SAVE_DIR})",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Exit after one batch has been sent or received",
    )
    return parser


async def run_peer(args: argparse.Namespace) -> int:
    signaling = SignalingClient(url=args.relay)
    session = SessionCoordinator(
        signaling,
        device_id=args.device_id,
        save_dir=args.save_dir,
    )
    done = asyncio.Event()
    result = {"code": 0}
    paired_once = False

    def on_status(text: str, kind: str):
        logger.info(f"Status: {text}")

    def on_devices(devices):
        if devices:
            logger.info("Devices: " + ", ".join(
                f"{d.id}{' (busy)' if d.connected else ''}" for d in devices
            ))

    def on_progress(progress):
        logger.info(
            f"{progress.direction.value} {progress.file_name} "
            f"({progress.file_index}/{progress.total_files}): "
            f"{progress.progress_percent:.1f}% at {progress.speed_bps / 1024 / 1024:.2f} MB/s"
        )

    def on_file_received(artifact):
        where = artifact.saved_path or "memory"
        logger.info(f"Saved {artifact.name} ({artifact.size} bytes) to {where}")

    async def on_relay_connect():
        nonlocal paired_once
        if args.connect and not paired_once:
            paired_once = True
            await session.connect_to_device(args.connect)

    async def on_peer_connected(peer_id: str):
        if args.send:
            await session.send_files(args.send)

    def on_send_finished(ok: bool):
        if not ok:
            result["code"] = 1
        if args.once:
            done.set()

    def on_batch_completed(total: int):
        if args.once:
            done.set()

    def on_failure(reason: str):
        result["code"] = 1
        if args.once:
            done.set()

    session.on("status", on_status)
    session.on("device_list", on_devices)
    session.on("progress", on_progress)
    session.on("file_received", on_file_received)
    session.on("peer_connected", on_peer_connected)
    session.on("send_finished", on_send_finished)
    session.on("connection_failed", on_failure)
    session.receiver.on("batch_completed", on_batch_completed)
    # Registered after the coordinator's own handler, so this runs post-registration.
    signaling.on("connect", on_relay_connect)
    signaling.on("error", on_failure)

    logger.info(f"Device id: {session.device_id}")
    await session.start()
    try:
        await done.wait()
    finally:
        await session.stop()
    return result["code"]


def main() -> int:
    """Main entry point for the ShareLink peer."""
    parser = build_parser()
    args = parser.parse_args()

    if args.send and not args.connect:
        parser.error("--send requires --connect")
    if args.device_id and not validate_device_id(args.device_id):
        parser.error("--device-id must be 3-20 letters or digits")

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        return asyncio.run(run_peer(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
