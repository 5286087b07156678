"""
MTF Sentinel Trader - Database
SQLite storage for positions, orders, user settings, daily summaries and scans.

Writes are keyed by natural identifiers so duplicate invocations are harmless:
at most one ACTIVE position per (user_id, symbol) is enforced by a partial
unique index, trailing levels only ever ratchet up, and exits only apply to
ACTIVE rows.
"""

import sqlite3
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any, Union
from contextlib import contextmanager

from config import Config

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """SQLite database manager for MTF Sentinel Trader."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        """Initialize database connection."""
        self.db_path = Path(db_path) if db_path else Config.DATABASE_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            # Positions table (algorithm-level rows use user_id 'ALGO')
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS positions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    entry_price REAL NOT NULL,
                    entry_quantity INTEGER NOT NULL,
                    entry_date TEXT NOT NULL,
                    entry_time TEXT,
                    entry_order_id TEXT,
                    margin_per_share REAL,
                    margin_required REAL,
                    leverage REAL,
                    margin_estimated INTEGER DEFAULT 0,
                    current_price REAL,
                    status TEXT NOT NULL DEFAULT 'ACTIVE',
                    trailing_level INTEGER NOT NULL DEFAULT 0,
                    pnl_amount REAL DEFAULT 0,
                    pnl_percentage REAL DEFAULT 0,
                    exit_price REAL,
                    exit_date TEXT,
                    exit_time TEXT,
                    exit_reason TEXT,
                    exit_type TEXT,
                    exit_order_id TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Entry conditions recorded when a position is opened
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS entry_conditions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    position_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    scan_date TEXT NOT NULL,
                    signal TEXT,
                    confidence INTEGER,
                    conditions JSON,
                    indicators JSON,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (position_id),
                    FOREIGN KEY (position_id) REFERENCES positions(id)
                )
            """)

            # Orders table
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL,
                    quantity INTEGER NOT NULL,
                    broker_order_id TEXT UNIQUE,
                    order_status TEXT,
                    success INTEGER NOT NULL DEFAULT 0,
                    price REAL,
                    error TEXT,
                    error_code TEXT,
                    after_market_order INTEGER DEFAULT 0,
                    position_id TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Users
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    phone_number TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Trading preferences
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS trading_preferences (
                    user_id TEXT PRIMARY KEY,
                    total_capital REAL NOT NULL DEFAULT 0,
                    allocation_percentage REAL NOT NULL DEFAULT 0,
                    max_concurrent_positions INTEGER NOT NULL DEFAULT 5,
                    daily_loss_limit_percentage REAL NOT NULL DEFAULT 5,
                    stop_loss_percentage REAL,
                    is_real_trading_enabled INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Broker credentials and cached access token
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS api_credentials (
                    user_id TEXT PRIMARY KEY,
                    client_id TEXT NOT NULL,
                    api_key TEXT NOT NULL,
                    private_key TEXT NOT NULL,
                    access_token TEXT,
                    token_expires_at TEXT,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Daily trading summary
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS daily_trading_summary (
                    user_id TEXT NOT NULL,
                    trading_date TEXT NOT NULL,
                    realized_pnl REAL NOT NULL DEFAULT 0,
                    trades_count INTEGER NOT NULL DEFAULT 0,
                    winning_trades INTEGER NOT NULL DEFAULT 0,
                    losing_trades INTEGER NOT NULL DEFAULT 0,
                    is_trading_stopped INTEGER NOT NULL DEFAULT 0,
                    stop_reason TEXT,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (user_id, trading_date)
                )
            """)

            # Scan history
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS scan_history (
                    scan_id TEXT PRIMARY KEY,
                    started_at TEXT NOT NULL,
                    total_symbols INTEGER,
                    successful INTEGER,
                    partial INTEGER,
                    failed INTEGER,
                    entry_count INTEGER,
                    watchlist_count INTEGER,
                    no_entry_count INTEGER,
                    market_condition TEXT,
                    summary JSON,
                    results JSON,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Errors table
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS errors (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    error_type TEXT NOT NULL,
                    component TEXT NOT NULL,
                    message TEXT NOT NULL,
                    stack_trace TEXT,
                    context JSON,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # At most one open position per user and symbol
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_positions_active_unique
                ON positions(user_id, symbol) WHERE status = 'ACTIVE'
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_positions_user ON positions(user_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id)")

            logger.info(f"Database initialized at {self.db_path}")

    # =========================================================================
    # POSITIONS
    # =========================================================================

    def create_position(self, position_data: dict) -> bool:
        """
        Insert an ACTIVE position.

        Returns False (and writes nothing) when the user already has an
        ACTIVE position in the symbol.
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO positions
                (id, user_id, symbol, entry_price, entry_quantity, entry_date, entry_time,
                 entry_order_id, margin_per_share, margin_required, leverage, margin_estimated,
                 current_price, status, trailing_level, pnl_amount, pnl_percentage, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'ACTIVE', ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
            """, (
                position_data.get("id"),
                position_data.get("user_id"),
                position_data.get("symbol"),
                position_data.get("entry_price"),
                position_data.get("entry_quantity"),
                position_data.get("entry_date"),
                position_data.get("entry_time"),
                position_data.get("entry_order_id"),
                position_data.get("margin_per_share"),
                position_data.get("margin_required"),
                position_data.get("leverage"),
                1 if position_data.get("margin_estimated") else 0,
                position_data.get("current_price", position_data.get("entry_price")),
                position_data.get("trailing_level", 0),
                position_data.get("pnl_amount", 0),
                position_data.get("pnl_percentage", 0),
                _now()
            ))

            created = cursor.rowcount == 1
            if created:
                logger.info(f"Created position: {position_data.get('user_id')}/{position_data.get('symbol')}")
            else:
                logger.info(
                    f"Position already open, skipped: "
                    f"{position_data.get('user_id')}/{position_data.get('symbol')}"
                )
            return created

    def get_position(self, position_id: str) -> Optional[dict]:
        """Get a specific position by ID."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM positions WHERE id = ?", (position_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_active_position(self, user_id: str, symbol: str) -> Optional[dict]:
        """Get the open position for a user and symbol, if any."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM positions WHERE user_id = ? AND symbol = ? AND status = 'ACTIVE'",
                (user_id, symbol)
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_active_positions(self, user_id: Optional[str] = None) -> List[dict]:
        """Get all open positions, optionally for one user."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            if user_id:
                cursor.execute(
                    "SELECT * FROM positions WHERE status = 'ACTIVE' AND user_id = ? ORDER BY created_at",
                    (user_id,)
                )
            else:
                cursor.execute("SELECT * FROM positions WHERE status = 'ACTIVE' ORDER BY created_at")
            return [dict(row) for row in cursor.fetchall()]

    def get_positions(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100
    ) -> List[dict]:
        """Retrieve positions with optional filters."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            query = "SELECT * FROM positions WHERE 1=1"
            params: List[Any] = []

            if user_id:
                query += " AND user_id = ?"
                params.append(user_id)

            if status:
                query += " AND status = ?"
                params.append(status)

            query += " ORDER BY updated_at DESC LIMIT ?"
            params.append(limit)

            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def update_position_price(
        self,
        position_id: str,
        current_price: float,
        pnl_amount: float,
        pnl_percentage: float
    ) -> bool:
        """Refresh price and PnL of an ACTIVE position."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                UPDATE positions SET current_price = ?, pnl_amount = ?, pnl_percentage = ?, updated_at = ?
                WHERE id = ? AND status = 'ACTIVE'
            """, (current_price, pnl_amount, pnl_percentage, _now(), position_id))
            return cursor.rowcount > 0

    def ratchet_trailing_level(self, position_id: str, level: int) -> Optional[int]:
        """
        Raise the stored trailing level to `level` if higher; never lower it.

        Returns the persisted level, or None if the position does not exist.
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                UPDATE positions SET trailing_level = MAX(trailing_level, ?), updated_at = ?
                WHERE id = ? AND status = 'ACTIVE'
            """, (level, _now(), position_id))
            cursor.execute("SELECT trailing_level FROM positions WHERE id = ?", (position_id,))
            row = cursor.fetchone()
            return int(row["trailing_level"]) if row else None

    def mark_position_exited(
        self,
        position_id: str,
        exit_price: float,
        exit_reason: str,
        exit_type: Optional[str] = None,
        pnl_amount: Optional[float] = None,
        pnl_percentage: Optional[float] = None,
        exit_order_id: Optional[str] = None,
        status: str = "EXITED"
    ) -> bool:
        """
        Close an ACTIVE position. Only the first call takes effect.

        Returns True if this call performed the transition.
        """
        now = datetime.now(timezone.utc)
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                UPDATE positions SET
                    status = ?,
                    exit_price = ?,
                    current_price = ?,
                    exit_date = ?,
                    exit_time = ?,
                    exit_reason = ?,
                    exit_type = ?,
                    exit_order_id = ?,
                    pnl_amount = COALESCE(?, pnl_amount),
                    pnl_percentage = COALESCE(?, pnl_percentage),
                    updated_at = ?
                WHERE id = ? AND status = 'ACTIVE'
            """, (
                status,
                exit_price,
                exit_price,
                now.date().isoformat(),
                now.strftime("%H:%M:%S"),
                exit_reason,
                exit_type,
                exit_order_id,
                pnl_amount,
                pnl_percentage,
                now.isoformat(),
                position_id
            ))

            exited = cursor.rowcount > 0
            if exited:
                logger.info(f"Position {position_id} marked {status}: {exit_reason}")
            else:
                logger.info(f"Position {position_id} was not ACTIVE, exit ignored")
            return exited

    def save_entry_conditions(self, position_id: str, symbol: str, evaluation: dict) -> None:
        """Record the entry evaluation that opened a position."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT OR IGNORE INTO entry_conditions
                (position_id, symbol, scan_date, signal, confidence, conditions, indicators)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                position_id,
                symbol,
                datetime.now(timezone.utc).date().isoformat(),
                evaluation.get("signal"),
                evaluation.get("confidence"),
                json.dumps(evaluation.get("conditions", [])),
                json.dumps(evaluation.get("indicators", {}))
            ))

    def get_entry_conditions(self, position_id: str) -> Optional[dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM entry_conditions WHERE position_id = ?", (position_id,))
            row = cursor.fetchone()
            if not row:
                return None
            result = dict(row)
            result["conditions"] = json.loads(result.get("conditions") or "[]")
            result["indicators"] = json.loads(result.get("indicators") or "{}")
            return result

    # =========================================================================
    # ORDERS
    # =========================================================================

    def save_order(self, order_data: dict) -> bool:
        """Record a broker order attempt. A repeated broker order ID is ignored."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT OR IGNORE INTO orders
                (id, user_id, symbol, side, quantity, broker_order_id, order_status, success,
                 price, error, error_code, after_market_order, position_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                order_data.get("id"),
                order_data.get("user_id"),
                order_data.get("symbol"),
                order_data.get("side"),
                order_data.get("quantity"),
                order_data.get("order_id"),
                order_data.get("order_status"),
                1 if order_data.get("success") else 0,
                order_data.get("price"),
                order_data.get("error"),
                order_data.get("error_code"),
                1 if order_data.get("after_market_order") else 0,
                order_data.get("position_id")
            ))
            return cursor.rowcount > 0

    def get_orders(self, user_id: Optional[str] = None, limit: int = 100) -> List[dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            if user_id:
                cursor.execute(
                    "SELECT * FROM orders WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                    (user_id, limit)
                )
            else:
                cursor.execute("SELECT * FROM orders ORDER BY created_at DESC LIMIT ?", (limit,))
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # USERS, PREFERENCES, CREDENTIALS
    # =========================================================================

    def save_user(self, user_id: str, name: str = "", phone_number: Optional[str] = None,
                  is_active: bool = True) -> None:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO users (id, name, phone_number, is_active) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    phone_number = excluded.phone_number,
                    is_active = excluded.is_active
            """, (user_id, name, phone_number, 1 if is_active else 0))

    def get_user(self, user_id: str) -> Optional[dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def save_trading_preferences(self, preferences: dict) -> None:
        """Insert or update a user's trading preferences."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO trading_preferences
                (user_id, total_capital, allocation_percentage, max_concurrent_positions,
                 daily_loss_limit_percentage, stop_loss_percentage, is_real_trading_enabled, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    total_capital = excluded.total_capital,
                    allocation_percentage = excluded.allocation_percentage,
                    max_concurrent_positions = excluded.max_concurrent_positions,
                    daily_loss_limit_percentage = excluded.daily_loss_limit_percentage,
                    stop_loss_percentage = excluded.stop_loss_percentage,
                    is_real_trading_enabled = excluded.is_real_trading_enabled,
                    updated_at = excluded.updated_at
            """, (
                preferences["user_id"],
                preferences.get("total_capital", 0),
                preferences.get("allocation_percentage", 0),
                preferences.get("max_concurrent_positions", 5),
                preferences.get("daily_loss_limit_percentage", 5),
                preferences.get("stop_loss_percentage"),
                1 if preferences.get("is_real_trading_enabled") else 0,
                _now()
            ))

    def get_trading_preferences(self, user_id: str) -> Optional[dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM trading_preferences WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_eligible_users(self) -> List[dict]:
        """Preferences of active users with real trading enabled and stored credentials."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT p.* FROM trading_preferences p
                JOIN users u ON u.id = p.user_id
                JOIN api_credentials c ON c.user_id = p.user_id
                WHERE p.is_real_trading_enabled = 1 AND u.is_active = 1
                ORDER BY p.user_id
            """)
            return [dict(row) for row in cursor.fetchall()]

    def save_api_credentials(self, user_id: str, client_id: str, api_key: str, private_key: str) -> None:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO api_credentials (user_id, client_id, api_key, private_key, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    client_id = excluded.client_id,
                    api_key = excluded.api_key,
                    private_key = excluded.private_key,
                    access_token = NULL,
                    token_expires_at = NULL,
                    updated_at = excluded.updated_at
            """, (user_id, client_id, api_key, private_key, _now()))

    def get_api_credentials(self, user_id: str) -> Optional[dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM api_credentials WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def save_access_token(self, user_id: str, access_token: str, expires_at: str) -> None:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                UPDATE api_credentials SET access_token = ?, token_expires_at = ?, updated_at = ?
                WHERE user_id = ?
            """, (access_token, expires_at, _now(), user_id))

    # =========================================================================
    # DAILY TRADING SUMMARY
    # =========================================================================

    def get_realized_pnl(self, user_id: str, trading_date: str) -> Dict[str, Any]:
        """Aggregate PnL of positions the user closed on trading_date."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT
                    COALESCE(SUM(pnl_amount), 0) AS realized_pnl,
                    COUNT(*) AS trades_count,
                    COALESCE(SUM(CASE WHEN pnl_amount > 0 THEN 1 ELSE 0 END), 0) AS winning_trades,
                    COALESCE(SUM(CASE WHEN pnl_amount < 0 THEN 1 ELSE 0 END), 0) AS losing_trades
                FROM positions
                WHERE user_id = ? AND status != 'ACTIVE' AND exit_date = ?
            """, (user_id, trading_date))
            return dict(cursor.fetchone())

    def upsert_daily_summary(
        self,
        user_id: str,
        trading_date: str,
        realized_pnl: float,
        trades_count: int,
        winning_trades: int,
        losing_trades: int,
        is_trading_stopped: bool = False,
        stop_reason: Optional[str] = None
    ) -> None:
        """Insert or replace the summary row for (user_id, trading_date)."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO daily_trading_summary
                (user_id, trading_date, realized_pnl, trades_count, winning_trades, losing_trades,
                 is_trading_stopped, stop_reason, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, trading_date) DO UPDATE SET
                    realized_pnl = excluded.realized_pnl,
                    trades_count = excluded.trades_count,
                    winning_trades = excluded.winning_trades,
                    losing_trades = excluded.losing_trades,
                    is_trading_stopped = MAX(is_trading_stopped, excluded.is_trading_stopped),
                    stop_reason = COALESCE(excluded.stop_reason, stop_reason),
                    updated_at = excluded.updated_at
            """, (
                user_id,
                trading_date,
                realized_pnl,
                trades_count,
                winning_trades,
                losing_trades,
                1 if is_trading_stopped else 0,
                stop_reason,
                _now()
            ))

    def get_daily_summary(self, user_id: str, trading_date: str) -> Optional[dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM daily_trading_summary WHERE user_id = ? AND trading_date = ?",
                (user_id, trading_date)
            )
            row = cursor.fetchone()
            if not row:
                return None
            result = dict(row)
            result["is_trading_stopped"] = bool(result["is_trading_stopped"])
            return result

    # =========================================================================
    # SCAN HISTORY
    # =========================================================================

    def save_scan(self, summary: dict, results: List[dict]) -> str:
        """Save a scan summary and its per-symbol results."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT OR REPLACE INTO scan_history
                (scan_id, started_at, total_symbols, successful, partial, failed, entry_count,
                 watchlist_count, no_entry_count, market_condition, summary, results)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                summary.get("scan_id"),
                summary.get("started_at"),
                summary.get("total_symbols"),
                summary.get("successful"),
                summary.get("partial"),
                summary.get("failed"),
                summary.get("entry_count"),
                summary.get("watchlist_count"),
                summary.get("no_entry_count"),
                summary.get("market_condition"),
                json.dumps(summary),
                json.dumps(results)
            ))
            logger.info(f"Saved scan: {summary.get('scan_id')}")
            return summary.get("scan_id")

    def get_recent_scans(self, limit: int = 10) -> List[dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT scan_id, started_at, summary FROM scan_history ORDER BY started_at DESC LIMIT ?",
                (limit,)
            )
            rows = cursor.fetchall()
            return [json.loads(row["summary"]) for row in rows]

    # =========================================================================
    # ERRORS
    # =========================================================================

    def log_error(
        self,
        error_type: str,
        component: str,
        message: str,
        stack_trace: Optional[str] = None,
        context: Optional[dict] = None
    ) -> None:
        """Log an error to the database."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO errors (error_type, component, message, stack_trace, context)
                VALUES (?, ?, ?, ?, ?)
            """, (
                error_type,
                component,
                message,
                stack_trace,
                json.dumps(context) if context else None
            ))
            logger.error(f"[{component}] {error_type}: {message}")

    def get_recent_errors(self, limit: int = 50) -> List[dict]:
        """Get recent errors."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM errors ORDER BY created_at DESC LIMIT ?", (limit,))
            rows = cursor.fetchall()
            return [dict(row) for row in rows]
