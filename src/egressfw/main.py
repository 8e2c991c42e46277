import logging
import os
import signal
import sys

from egressfw.bootstrap import FirewallBootstrap
from egressfw.config import FirewallConfig
from egressfw.errors import FirewallError


def main() -> int:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"),
                        format="%(asctime)s - %(levelname)s - %(message)s",
                        datefmt="%Y-%m-%d %H:%M:%S")

    def shutdown(signum, frame):
        logging.error(f"Received signal {signum}, aborting...")
        raise SystemExit(1)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    try:
        config = FirewallConfig.from_env()
    except ValueError as e:
        logging.error(f"Invalid configuration: {e}")
        return 1

    try:
        FirewallBootstrap.from_config(config).run()
    except FirewallError as e:
        logging.error(f"{type(e).__name__}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
