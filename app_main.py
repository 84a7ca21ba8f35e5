"""Application entry point for the QuizArena server."""

from __future__ import annotations

from quiz_arena.constants.about import APP_NAME, APP_VERSION
from quiz_arena.constants.network_constants import DEFAULT_HOST, DEFAULT_PORT
from quiz_arena.constants.storage_constants import DEFAULT_DATABASE_URL
from quiz_arena.server.api_server import start_api_server
from quiz_arena.storage.database import Database
from quiz_arena.utils.logging_config import configure_logging


def main() -> None:
    """Initialize logging and the schema, then serve the API until interrupted."""
    logger = configure_logging()
    logger.info("Starting %s %s", APP_NAME, APP_VERSION)

    database = Database(DEFAULT_DATABASE_URL)
    database.create_schema()
    server_thread = start_api_server(database, DEFAULT_HOST, DEFAULT_PORT)
    logger.info("API available at http://%s:%d/", DEFAULT_HOST, DEFAULT_PORT)
    try:
        server_thread.join()
    except KeyboardInterrupt:
        logger.info("Shutting down %s", APP_NAME)
    finally:
        database.dispose()


if __name__ == "__main__":
    main()
