"""Server entry point for the remote log store."""

import logging

from src.config import load_server_config
from src.server import create_app


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger(__name__)

    config = load_server_config()
    app = create_app(config)
    logger.info(
        "Starting remote log store on %s:%d (admins: %s)",
        config.host,
        config.port,
        ", ".join(config.admin_actors) or "none",
    )
    app.run(host=config.host, port=config.port)


if __name__ == "__main__":
    main()
