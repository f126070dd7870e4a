"""Registry of paid endpoints: pricing for budget checks, usage stats for ranking."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import ToolNotFoundError
from .money import parse_amount
from .storage import Store

logger = logging.getLogger(__name__)


@dataclass
class ToolPricing:
    amount: int
    currency: str = "USDC"
    network: str = "eip155:84532"
    pay_to: str = ""

    def __post_init__(self):
        self.amount = parse_amount(self.amount, "pricing.amount")


@dataclass
class ToolStats:
    total_calls: int = 0
    successful_calls: int = 0
    average_latency_ms: int = 0
    total_spent: int = 0

    @property
    def success_rate(self) -> float:
        return self.successful_calls / self.total_calls if self.total_calls else 0.0


@dataclass
class Tool:
    """A paid endpoint the agent can call."""

    tool_id: str
    name: str
    endpoint: str
    pricing: ToolPricing
    description: str = ""
    category: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    stats: ToolStats = field(default_factory=ToolStats)
    is_active: bool = True
    last_used: Optional[float] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "tool_id": self.tool_id,
            "name": self.name,
            "description": self.description,
            "endpoint": self.endpoint,
            "category": self.category,
            "tags": self.tags,
            "pricing": {
                "amount": str(self.pricing.amount),
                "currency": self.pricing.currency,
                "network": self.pricing.network,
                "pay_to": self.pricing.pay_to,
            },
            "stats": {
                "total_calls": self.stats.total_calls,
                "successful_calls": self.stats.successful_calls,
                "average_latency_ms": self.stats.average_latency_ms,
                "total_spent": str(self.stats.total_spent),
            },
            "is_active": self.is_active,
            "last_used": self.last_used,
        }


class ToolRegistry:
    """SQLite-backed tool registry."""

    def __init__(self, store: Store, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    def _row_to_tool(self, row: sqlite3.Row) -> Tool:
        return Tool(
            tool_id=row["tool_id"],
            name=row["name"],
            description=row["description"],
            endpoint=row["endpoint"],
            category=row["category"],
            tags=json.loads(row["tags"]),
            pricing=ToolPricing(
                amount=int(row["price_amount"]),
                currency=row["price_currency"],
                network=row["price_network"],
                pay_to=row["pay_to"],
            ),
            stats=ToolStats(
                total_calls=row["total_calls"],
                successful_calls=row["successful_calls"],
                average_latency_ms=row["average_latency_ms"],
                total_spent=int(row["total_spent"]),
            ),
            is_active=bool(row["is_active"]),
            last_used=row["last_used"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def register_tool(self, tool: Tool) -> Tool:
        """Insert a tool, or update its listing while keeping accumulated stats."""
        if not tool.tool_id or not tool.endpoint:
            raise ValueError("tool_id and endpoint are required")
        now = self._clock()
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO tools (
                    tool_id, name, description, endpoint, category, tags,
                    price_amount, price_currency, price_network, pay_to,
                    is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT (tool_id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    endpoint = excluded.endpoint,
                    category = excluded.category,
                    tags = excluded.tags,
                    price_amount = excluded.price_amount,
                    price_currency = excluded.price_currency,
                    price_network = excluded.price_network,
                    pay_to = excluded.pay_to,
                    updated_at = excluded.updated_at
                """,
                (
                    tool.tool_id,
                    tool.name,
                    tool.description,
                    tool.endpoint,
                    tool.category,
                    json.dumps(tool.tags),
                    str(tool.pricing.amount),
                    tool.pricing.currency,
                    tool.pricing.network,
                    tool.pricing.pay_to,
                    now,
                    now,
                ),
            )
            row = conn.execute("SELECT * FROM tools WHERE tool_id = ?", (tool.tool_id,)).fetchone()
        return self._row_to_tool(row)

    def get_tool(self, tool_id: str) -> Optional[Tool]:
        with self.store.read() as conn:
            row = conn.execute("SELECT * FROM tools WHERE tool_id = ?", (tool_id,)).fetchone()
        return self._row_to_tool(row) if row is not None else None

    def get_tool_by_endpoint(self, endpoint: str) -> Optional[Tool]:
        with self.store.read() as conn:
            row = conn.execute(
                "SELECT * FROM tools WHERE endpoint = ? ORDER BY is_active DESC LIMIT 1",
                (endpoint,),
            ).fetchone()
        return self._row_to_tool(row) if row is not None else None

    def list_active_tools(self) -> list[Tool]:
        with self.store.read() as conn:
            rows = conn.execute("SELECT * FROM tools WHERE is_active = 1 ORDER BY name").fetchall()
        return [self._row_to_tool(r) for r in rows]

    def search_tools(
        self,
        category: Optional[str] = None,
        tags: Optional[list[str]] = None,
        text: Optional[str] = None,
    ) -> list[Tool]:
        """Active tools matching every given filter (tags match if any overlaps)."""
        results = []
        wanted_tags = {t.lower() for t in tags or []}
        needle = text.lower() if text else None
        for tool in self.list_active_tools():
            if category and (tool.category or "").lower() != category.lower():
                continue
            if wanted_tags and not wanted_tags.intersection(t.lower() for t in tool.tags):
                continue
            if needle and needle not in tool.name.lower() and needle not in tool.description.lower():
                continue
            results.append(tool)
        return results

    def update_tool_stats(
        self,
        tool_id: str,
        success: bool,
        latency_ms: int,
        amount_spent: int | str,
    ) -> Optional[Tool]:
        """Fold one call into the tool's running stats. Unknown tools are ignored."""
        amount_spent = parse_amount(amount_spent, "amount_spent")
        with self.store.transaction() as conn:
            row = conn.execute("SELECT * FROM tools WHERE tool_id = ?", (tool_id,)).fetchone()
            if row is None:
                logger.debug("Stats update for unregistered tool %s ignored", tool_id)
                return None
            tool = self._row_to_tool(row)
            total_calls = tool.stats.total_calls + 1
            average = (tool.stats.average_latency_ms * tool.stats.total_calls + latency_ms) / total_calls
            now = self._clock()
            conn.execute(
                """
                UPDATE tools
                SET total_calls = ?, successful_calls = ?, average_latency_ms = ?,
                    total_spent = ?, last_used = ?, updated_at = ?
                WHERE tool_id = ?
                """,
                (
                    total_calls,
                    tool.stats.successful_calls + (1 if success else 0),
                    int(round(average)),
                    str(tool.stats.total_spent + amount_spent),
                    now,
                    now,
                    tool_id,
                ),
            )
            row = conn.execute("SELECT * FROM tools WHERE tool_id = ?", (tool_id,)).fetchone()
        return self._row_to_tool(row)

    def deactivate_tool(self, tool_id: str) -> None:
        with self.store.transaction() as conn:
            cursor = conn.execute(
                "UPDATE tools SET is_active = 0, updated_at = ? WHERE tool_id = ?",
                (self._clock(), tool_id),
            )
            if cursor.rowcount == 0:
                raise ToolNotFoundError(f"Tool not found: {tool_id}")

    def get_tools_by_reliability(self) -> list[Tool]:
        """Active tools with at least one call, best success rate first."""
        used = [t for t in self.list_active_tools() if t.stats.total_calls > 0]
        return sorted(used, key=lambda t: t.stats.success_rate, reverse=True)
