"""Apply sql/schema.sql to DATABASE_URL."""

import logging
from pathlib import Path

from citesync.core.db import get_connection

SCHEMA = Path(__file__).resolve().parents[1].joinpath("sql", "schema.sql")

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
logger = logging.getLogger("init_db")


def main() -> None:
    sql = SCHEMA.read_text(encoding="utf-8")
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(sql)
        conn.commit()
    logger.info("Applied %s", SCHEMA)


if __name__ == "__main__":
    main()
