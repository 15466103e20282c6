# -*- coding: utf-8 -*-

"""
Command line entry point: ``serlink`` / ``python -m serlink``.
"""
import argparse
import asyncio
import logging
import signal
import sys

from typing import List
from typing import Optional

from . import __version__
from .config import BridgeConfig
from .config import DEFAULT_ADDRESS
from .config import DEFAULT_BAUDRATE
from .config import DEFAULT_MAX_SESSIONS
from .config import DEFAULT_POLL_INTERVAL
from .config import DEFAULT_PORT
from .config import DEFAULT_SERIAL_DEVICE
from .exceptions import SerialConfigError
from .registry import AdmissionPolicy
from .server import BridgeServer
from .transport import DEFAULT_READ_SIZE

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

log = logging.getLogger('serlink.cli')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='serlink',
        description='Bridge TCP connections to a serial device, raw bytes both ways.',
    )
    parser.add_argument(
        '-a', '--address', default=DEFAULT_ADDRESS,
        help=f'address to listen on (default: {DEFAULT_ADDRESS})')
    parser.add_argument(
        '-p', '--port', type=int, default=DEFAULT_PORT,
        help=f'TCP port to listen on (default: {DEFAULT_PORT})')
    parser.add_argument(
        '-s', '--serial-dev', default=DEFAULT_SERIAL_DEVICE,
        help='serial device path or pyserial URL such as loop:// '
             f'(default: {DEFAULT_SERIAL_DEVICE})')
    parser.add_argument(
        '-b', '--baud', type=int, default=DEFAULT_BAUDRATE,
        help=f'baud rate for the serial device (default: {DEFAULT_BAUDRATE})')
    parser.add_argument(
        '-d', '--debug', action='count', default=0,
        help='more diagnostics; repeat (-dd) to log every relayed chunk')
    parser.add_argument(
        '--poll-interval', type=float, default=DEFAULT_POLL_INTERVAL,
        help=f'longest wait per relay iteration in seconds (default: {DEFAULT_POLL_INTERVAL})')
    parser.add_argument(
        '--read-size', type=int, default=DEFAULT_READ_SIZE,
        help=f'largest chunk relayed at once (default: {DEFAULT_READ_SIZE})')
    parser.add_argument(
        '--max-sessions', type=int, default=DEFAULT_MAX_SESSIONS,
        help=f'concurrent session limit, 0 for none (default: {DEFAULT_MAX_SESSIONS})')
    parser.add_argument(
        '--device-policy', choices=[p.value for p in AdmissionPolicy],
        default=AdmissionPolicy.REJECT.value,
        help='what a second session on a busy device gets (default: reject)')
    parser.add_argument(
        '-V', '--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def config_from_args(args: argparse.Namespace) -> BridgeConfig:
    return BridgeConfig(
        address=args.address,
        port=args.port,
        serial_device=args.serial_dev,
        baudrate=args.baud,
        verbosity=args.debug,
        poll_interval=args.poll_interval,
        read_size=args.read_size,
        max_sessions=args.max_sessions,
        device_policy=args.device_policy,
    ).validate()


def setup_logging(config: BridgeConfig) -> None:
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    # asyncio is chatty at DEBUG; keep it for -dd
    if config.verbosity < 2:
        logging.getLogger('asyncio').setLevel(logging.WARNING)


async def run(config: BridgeConfig) -> None:
    """Serve until SIGINT/SIGTERM"""
    server = BridgeServer(config)
    await server.start()

    loop = asyncio.get_running_loop()
    serving = asyncio.ensure_future(server.serve_forever())
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, serving.cancel)
        except (NotImplementedError, RuntimeError):
            # Windows event loops; Ctrl-C arrives as KeyboardInterrupt
            pass

    try:
        await serving
    except asyncio.CancelledError:
        log.info('Shutting down')
    finally:
        await server.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = config_from_args(args)
    except SerialConfigError as e:
        print(f'serlink: error: {e}', file=sys.stderr)
        return 2

    setup_logging(config)
    log.debug('configuration: %s', config.as_dict())

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        pass
    except OSError as e:
        log.error('Cannot listen on %s:%d: %s', config.address, config.port, e)
        return 1
    return 0
