#!/usr/bin/env python3
"""Build a small demo database.

Creates two experienced cyclists with commuter routes across a city centre,
one inexperienced rider with a saved journey, and a BuddyRequest between
them, so the CLI has something to show.

Usage:
    python scripts/seed_demo.py [path/to/demo.db]
"""

from __future__ import annotations

import datetime
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday"]


def main() -> None:
    from cyclebuddy import engine
    from cyclebuddy.config import DATA_DIR
    from cyclebuddy.store.database import Database

    db_path = Path(sys.argv[1]) if len(sys.argv) > 1 else DATA_DIR / "demo.db"
    if db_path.exists():
        logger.info("Removing existing %s", db_path)
        db_path.unlink()

    db = Database(db_path)
    db.initialise()

    with db.session() as conn:
        # 1. Users
        logger.info("Step 1: Creating users...")
        alice = engine.create_user(conn, "Alice", "alice@example.com")
        bob = engine.create_user(conn, "Bob", "bob@example.com")
        carol = engine.create_user(conn, "Carol", "carol@example.com")

        # 2. Experienced routes
        logger.info("Step 2: Creating routes...")
        engine.create_route(
            conn,
            alice.id,
            [[51.5007, -0.1246], [51.5055, -0.0754], [51.5154, -0.0721]],
            datetime.time(8, 0),
            datetime.time(8, 40),
            days=WEEKDAYS,
            name="Westminster to Aldgate",
        )
        bob_route = engine.create_route(
            conn,
            bob.id,
            [[51.5287, -0.1340], [51.5154, -0.1410], [51.5007, -0.1246]],
            datetime.time(7, 30),
            datetime.time(8, 0),
            days=["monday", "wednesday", "friday"],
            name="Euston to Westminster",
        )

        # 3. A rider's saved journey and a request
        logger.info("Step 3: Saving Carol's journey and sending a request...")
        saved = engine.create_saved_query(
            conn,
            carol.id,
            [51.5280, -0.1345],
            [51.5010, -0.1250],
            radius=500,
        )
        matches = engine.run_saved_query(conn, carol.id, saved.id)
        logger.info("Carol's journey matches %d routes", len(matches))
        if any(m.route_id == bob_route.id for m in matches):
            engine.create_buddy_request(conn, carol.id, saved.id, bob_route.id)

    logger.info("Done. Demo database at %s", db_path)


if __name__ == "__main__":
    main()
