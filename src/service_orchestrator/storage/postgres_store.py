from __future__ import annotations

from typing import Any, Dict, List, Optional

import psycopg
from psycopg.rows import tuple_row

from service_orchestrator.config import POSTGRES_URL
from service_orchestrator.utils.logger import logger


class PostgresStore:
    """
    Persists unit lifecycle transitions and health results:
      - record_event(payload) / list_events(unit=None, limit=100)
      - record_health(payload) / list_recent_health(unit=None, limit=100)
      - prune_old_health(days)
    On first connect it creates the tables if they don't exist. When the
    database cannot be reached the store stays disabled and every call is a no-op.
    """
    def __init__(self, dsn: Optional[str] = None, connect_timeout: int = 3):
        self.dsn = dsn if dsn is not None else POSTGRES_URL
        self.connect_timeout = connect_timeout
        self.enabled = False
        if not self.dsn:
            return
        try:
            with self._connect(autocommit=True) as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute("""
                        CREATE TABLE IF NOT EXISTS unit_events (
                          id          BIGSERIAL PRIMARY KEY,
                          topology    TEXT        NOT NULL,
                          unit        TEXT        NOT NULL,
                          from_phase  TEXT        NOT NULL,
                          to_phase    TEXT        NOT NULL,
                          reason      TEXT,
                          ts          TIMESTAMPTZ NOT NULL DEFAULT now()
                        )
                    """)
                    cur.execute("""
                        CREATE TABLE IF NOT EXISTS unit_health (
                          id          BIGSERIAL PRIMARY KEY,
                          topology    TEXT        NOT NULL,
                          unit        TEXT        NOT NULL,
                          outcome     TEXT        NOT NULL CHECK (outcome IN ('healthy','unhealthy','unknown')),
                          message     TEXT,
                          ts          TIMESTAMPTZ NOT NULL DEFAULT now()
                        )
                    """)
                    cur.execute("CREATE INDEX IF NOT EXISTS unit_events_unit_ts_idx ON unit_events (unit, ts DESC)")
                    cur.execute("CREATE INDEX IF NOT EXISTS unit_health_unit_ts_idx ON unit_health (unit, ts DESC)")
            self.enabled = True
        except psycopg.Error as e:
            logger.warning(f"PostgreSQL store disabled: {e}")
            self.enabled = False

    def _connect(self, autocommit: bool = False) -> psycopg.Connection:
        return psycopg.connect(self.dsn, autocommit=autocommit, connect_timeout=self.connect_timeout)

    # -------- unit_events --------
    def record_event(self, payload: Dict[str, Any]) -> None:
        if not self.enabled: return
        with self._connect(autocommit=True) as conn, conn.cursor() as cur:
            cur.execute("""
                INSERT INTO unit_events(topology,unit,from_phase,to_phase,reason,ts)
                VALUES (%s,%s,%s,%s,%s,COALESCE(%s, now()))
            """, (
                payload.get("topology"),
                payload.get("unit"),
                payload.get("from_phase"),
                payload.get("to_phase"),
                payload.get("reason"),
                payload.get("ts"),
            ))

    def list_events(self, unit: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        if not self.enabled: return []
        with self._connect() as conn, conn.cursor(row_factory=tuple_row) as cur:
            if unit:
                cur.execute("""
                    SELECT topology,unit,from_phase,to_phase,reason,ts
                    FROM unit_events WHERE unit=%s ORDER BY ts DESC LIMIT %s
                """, (unit, limit))
            else:
                cur.execute("""
                    SELECT topology,unit,from_phase,to_phase,reason,ts
                    FROM unit_events ORDER BY ts DESC LIMIT %s
                """, (limit,))
            rows = cur.fetchall()
        return [
            {"topology": r[0], "unit": r[1], "from_phase": r[2], "to_phase": r[3],
             "reason": r[4], "ts": r[5].timestamp()}
            for r in rows
        ]

    # -------- unit_health --------
    def record_health(self, payload: Dict[str, Any]) -> None:
        if not self.enabled: return
        with self._connect(autocommit=True) as conn, conn.cursor() as cur:
            cur.execute("""
                INSERT INTO unit_health(topology,unit,outcome,message,ts)
                VALUES (%s,%s,%s,%s,COALESCE(%s, now()))
            """, (
                payload.get("topology"),
                payload.get("unit"),
                payload.get("outcome"),
                payload.get("message"),
                payload.get("ts"),
            ))

    def list_recent_health(self, unit: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        if not self.enabled: return []
        with self._connect() as conn, conn.cursor(row_factory=tuple_row) as cur:
            if unit:
                cur.execute("""
                    SELECT topology,unit,outcome,message,ts
                    FROM unit_health WHERE unit=%s ORDER BY ts DESC LIMIT %s
                """, (unit, limit))
            else:
                cur.execute("""
                    SELECT topology,unit,outcome,message,ts
                    FROM unit_health ORDER BY ts DESC LIMIT %s
                """, (limit,))
            rows = cur.fetchall()
        return [
            {"topology": r[0], "unit": r[1], "outcome": r[2], "message": r[3], "ts": r[4].timestamp()}
            for r in rows
        ]

    def prune_old_health(self, days: int) -> int:
        if not self.enabled: return 0
        with self._connect(autocommit=True) as conn, conn.cursor() as cur:
            cur.execute("DELETE FROM unit_health WHERE ts < now() - make_interval(days => %s)", (days,))
            return cur.rowcount or 0

