"""Fake MySQL connections for exercising the report without a server."""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import pytest

from auto_increment_diff import CATALOG_QUERY


class FakeCursor:
    def __init__(self, connection: "FakeConnection") -> None:
        self.connection = connection
        self.rows: List[tuple] = []
        self.closed = False

    def execute(self, query: str, params: Optional[tuple] = None) -> None:
        self.connection.executed.append((query, params))
        result = self.connection.results[query]
        if isinstance(result, Exception):
            raise result
        self.rows = list(result)

    def fetchall(self) -> List[tuple]:
        return self.rows

    def close(self) -> None:
        self.closed = True
        self.connection.cursors_closed += 1


class FakeConnection:
    def __init__(self, results: Dict[str, object]) -> None:
        self.results = results
        self.executed: List[Tuple[str, Optional[tuple]]] = []
        self.cursors_closed = 0
        self.closed = False

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def close(self) -> None:
        self.closed = True


def count_query(schema: str, table: str) -> str:
    return f"SELECT COUNT(*) FROM `{schema}`.`{table}`"


@pytest.fixture
def shop_results() -> Dict[str, object]:
    """Catalog and COUNT(*) answers for the `shop` schema, already in server order."""
    return {
        CATALOG_QUERY: [
            ("orders", 1001),
            ("users", 501),
            ("audits", 80),
            ("logs", 11),
        ],
        count_query("shop", "orders"): [(950,)],
        count_query("shop", "users"): [(500,)],
        count_query("shop", "audits"): [(100,)],
        count_query("shop", "logs"): [(0,)],
    }


@pytest.fixture
def shop_connection(shop_results) -> FakeConnection:
    return FakeConnection(shop_results)


@pytest.fixture(autouse=True)
def no_dsn_from_environment(monkeypatch):
    monkeypatch.delenv("MYSQL_DSN", raising=False)
