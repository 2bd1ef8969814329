import sys

import uvicorn

from .config import ConfigError, load_config
from .logging_setup import logger
from .main import create_app


def main() -> int:
    try:
        cfg = load_config()
    except ConfigError as e:
        logger.error(f"Failed to load configuration: {e}")
        return 1
    app = create_app(cfg)
    logger.info(f"Serving metrics on {cfg.metrics.listen_addr}:{cfg.metrics.prometheus_port}")
    uvicorn.run(app, host=cfg.metrics.listen_addr, port=cfg.metrics.prometheus_port, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
