"""Repository for the counters table.

Not cached: the command processor does read-modify-write on every counter
command and must see its own last write.
"""

from __future__ import annotations

import json
import logging

import asyncpg

from shared.database import load_json, retry_on_db_error
from shared.models import Counter

logger = logging.getLogger(__name__)

_COUNTER_COLUMNS = (
    "user_id, deaths, swears, screams, bits, custom_counters, "
    "stream_started, last_notified_stream_id, last_updated"
)


def _row_to_counter(row: asyncpg.Record) -> Counter:
    data = dict(row)
    raw_custom = load_json(data.pop("custom_counters", None), {}, column="custom_counters")
    custom: dict[str, int] = {}
    if isinstance(raw_custom, dict):
        for name, value in raw_custom.items():
            try:
                custom[str(name).lower()] = max(0, int(value))
            except (TypeError, ValueError):
                continue
    return Counter(custom_counters=custom, **data)


class CounterRepository:
    """Pure SQL operations for counters."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_counters(self, user_id: str) -> Counter | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COUNTER_COLUMNS} FROM counters WHERE user_id = $1",
                user_id,
            )
            if not row:
                return None
            return _row_to_counter(row)

    async def save_counters(self, counter: Counter) -> None:
        async def _do() -> None:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO counters (user_id, deaths, swears, screams, bits, custom_counters,
                                          stream_started, last_notified_stream_id, last_updated)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, COALESCE($9, NOW()))
                    ON CONFLICT (user_id) DO UPDATE SET
                        deaths                  = EXCLUDED.deaths,
                        swears                  = EXCLUDED.swears,
                        screams                 = EXCLUDED.screams,
                        bits                    = EXCLUDED.bits,
                        custom_counters         = EXCLUDED.custom_counters,
                        stream_started          = EXCLUDED.stream_started,
                        last_notified_stream_id = EXCLUDED.last_notified_stream_id,
                        last_updated            = EXCLUDED.last_updated
                    """,
                    counter.user_id,
                    counter.deaths,
                    counter.swears,
                    counter.screams,
                    counter.bits,
                    json.dumps(counter.custom_counters),
                    counter.stream_started,
                    counter.last_notified_stream_id,
                    counter.last_updated,
                )

        await retry_on_db_error(_do)
