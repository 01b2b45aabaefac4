"""
pathfinder.__main__ — Entry point for ``python -m pathfinder``
================================================================

Wiring:
1. Load .env (DATABASE_URL).
2. Load config.yaml (community settings, API port).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Serve :mod:`pathfinder.api.main` with uvicorn (blocking).
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from dotenv import load_dotenv

from pathfinder.config import load_config
from pathfinder.database.engine import create_db_engine, init_db

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("pathfinder")


def main() -> None:
    """Bootstrap and run the Pathfinder API."""
    load_dotenv()

    try:
        cfg = load_config()
    except (FileNotFoundError, KeyError, ValueError) as exc:
        logger.critical("Invalid configuration: %s", exc)
        sys.exit(1)
    logger.info("Config loaded — Community: %s", cfg.community_name)

    try:
        engine = create_db_engine()
    except RuntimeError as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    init_db(engine)
    engine.dispose()

    uvicorn.run("pathfinder.api.main:app", host="0.0.0.0", port=cfg.api_port)


if __name__ == "__main__":
    main()
