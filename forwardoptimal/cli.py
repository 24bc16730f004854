import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys

from forwardoptimal import AUTHOR, BUILD_DATE, __version__
from forwardoptimal.config import DEFAULT_CONFIG_FILE, load_config
from forwardoptimal.errors import ConfigError
from forwardoptimal.lb.server import Listener
from forwardoptimal.logging_config import setup_logging

log = logging.getLogger("forwardoptimal.cli")

EPILOG = f"""examples:
  %(prog)s                           # use ./{DEFAULT_CONFIG_FILE}
  %(prog)s -c /root/a.json           # use the given config file
  %(prog)s -c ./configs/prod.json    # relative paths work too

author: {AUTHOR} | build date: {BUILD_DATE}
"""


def build_parser():
    parser = argparse.ArgumentParser(
        prog="forwardoptimal",
        description=f"ForwardOptimal - lowest-latency TCP forwarding v{__version__}",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument("-c", dest="config", metavar="PATH", default=DEFAULT_CONFIG_FILE,
                        help=f"config file path (default: {DEFAULT_CONFIG_FILE})")
    parser.add_argument("-h", "-help", "--help", action="help",
                        help="show this help message and exit")
    parser.add_argument("-v", "-version", "--version", dest="version", action="store_true",
                        help="show version information and exit")
    parser.add_argument("--log-level", default=os.getenv("FO_LOG_LEVEL", "INFO"),
                        help="DEBUG, INFO, WARNING or ERROR (default: INFO)")
    parser.add_argument("--log-file", default=os.getenv("FO_LOG_FILE"),
                        help="also write a rotating log file")
    parser.add_argument("--log-json", action="store_true",
                        default=bool(int(os.getenv("FO_LOG_JSON", "0"))),
                        help="emit JSON log lines")
    return parser


def print_version(out=None):
    out = out or sys.stdout
    print(f"ForwardOptimal v{__version__}", file=out)
    print(f"build date: {BUILD_DATE}", file=out)
    print(f"author: {AUTHOR}", file=out)


async def serve(config):
    listener = Listener(config)
    await listener.start()

    main_task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGTERM, main_task.cancel)
    try:
        await listener.serve_forever()
    except asyncio.CancelledError:
        log.info("shutting down")
    finally:
        await listener.close()


def main(argv=None):
    args = build_parser().parse_args(argv)
    if args.version:
        print_version()
        return 0

    setup_logging(args.log_level, log_file=args.log_file, json_format=args.log_json)
    if not os.path.exists(args.config):
        log.error("config file not found: %s", args.config)
        return 1

    log.info("starting up")
    log.info("config file: %s", args.config)
    try:
        config = load_config(args.config)
    except ConfigError as e:
        log.error("failed to load config: %s", e)
        return 1

    log.info("config loaded")
    log.info("listen address: %s", config.bind_addr)
    log.info("targets: %s", ", ".join(config.targets))
    log.info("check interval: %ss (on total failure: %ss)", config.update_interval, config.failure_interval)
    log.info("proxy protocol: %s", config.proxy_protocol.value)

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        log.info("interrupted")
    except OSError as e:
        log.error("cannot bind %s: %s", config.bind_addr, e)
        return 1
    return 0
