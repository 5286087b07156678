"""
MTF Sentinel Trader - Cron API
HTTP triggers for the daily scan and the position monitoring cycle.

Usage:
    POST /api/cron/daily-scan          (Authorization: Bearer <CRON_SECRET>)
    POST /api/cron/monitor-positions   (Authorization: Bearer <CRON_SECRET>)
    GET  /api/positions?token=xxx
    GET  /api/scans?token=xxx
    GET  /api/errors?token=xxx
    GET  /health  (no auth required)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request

from config import Config
from executors.exit_monitor import ExitMonitor
from executors.lemon_broker import LemonBrokerClient, MarketSession, market_status
from executors.lifecycle import PositionLifecycleManager
from executors.risk_engine import RiskEngine
from notifications.whatsapp import WhatsAppNotifier
from scanners.market_scanner import MarketScanner
from storage.database import Database

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Collaborators shared by the cron endpoints."""
    db: Database
    broker: LemonBrokerClient
    scanner: MarketScanner
    lifecycle: PositionLifecycleManager
    monitor: ExitMonitor

    @classmethod
    def build(cls, db: Optional[Database] = None) -> "Services":
        db = db or Database()
        broker = LemonBrokerClient(credential_store=db)
        notifier = WhatsAppNotifier()
        risk_engine = RiskEngine()
        lifecycle = PositionLifecycleManager(db, broker, risk_engine=risk_engine, notifier=notifier)
        return cls(
            db=db,
            broker=broker,
            scanner=MarketScanner(broker, db=db),
            lifecycle=lifecycle,
            monitor=ExitMonitor(db, broker, lifecycle, notifier=notifier, risk_engine=risk_engine),
        )


def verify_token(request: Request, token: Optional[str]) -> None:
    """Accept `Authorization: Bearer <secret>` or a `token` query parameter."""
    secret = Config.CRON_SECRET
    if not secret:
        logger.warning("CRON_SECRET not set - API disabled")
        raise HTTPException(status_code=403, detail="API disabled")

    header = request.headers.get("authorization", "")
    if header == f"Bearer {secret}" or token == secret:
        return
    raise HTTPException(status_code=401, detail="Unauthorized")


def _skip_reason(now: Optional[datetime] = None) -> Optional[str]:
    session = market_status(now)
    if session == MarketSession.WEEKEND:
        return "Skipped: Weekend day"
    if session != MarketSession.OPEN:
        return "Skipped: Outside market hours"
    return None


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="MTF Sentinel Trader API",
        description="Cron triggers and read access for MTF Sentinel Trader",
        version="1.0.0",
    )
    app.state.services = services

    def get_services() -> Services:
        if app.state.services is None:
            app.state.services = Services.build()
        return app.state.services

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    @app.get("/health")
    async def health_check():
        """Health check endpoint (no auth required)."""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "mtf-sentinel-trader",
            "mode": Config.MODE,
            "market": market_status().value,
        }

    @app.post("/api/cron/daily-scan")
    async def daily_scan(
        request: Request,
        token: Optional[str] = Query(None, description="API token"),
        symbols: Optional[str] = Query(None, description="Comma separated symbols, default universe if omitted"),
        execute_trades: bool = Query(True, description="Place entries for eligible users"),
        send_notifications: bool = Query(True),
        force: bool = Query(False, description="Run on weekends too"),
    ):
        """Scan the universe, open algorithm positions and execute entries for users."""
        verify_token(request, token)
        if not force and market_status() == MarketSession.WEEKEND:
            return {"success": False, "message": "Skipped: Weekend day"}

        svc = get_services()
        symbol_list = [s for s in symbols.split(",") if s.strip()] if symbols else None

        try:
            results, summary = await svc.scanner.scan(symbol_list)
            algorithm = svc.lifecycle.open_algorithm_positions(results)
            execution = None
            if execute_trades:
                execution = await svc.lifecycle.execute_entry_signals(
                    results, send_notifications=send_notifications
                )
        except Exception as e:
            logger.exception(f"Daily scan failed: {e}")
            svc.db.log_error("daily_scan_error", "CronAPI", str(e))
            raise HTTPException(status_code=500, detail=str(e))

        return {
            "success": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "summary": summary.to_dict(),
            "entries": [r.symbol for r in results if r.outcome == "ENTRY"],
            "watchlist": [r.symbol for r in results if r.outcome == "WATCHLIST"],
            "failed": [{"symbol": r.symbol, "error": r.error} for r in results if r.outcome == "FAILED"],
            "algorithm_positions": algorithm,
            "execution": execution,
        }

    @app.post("/api/cron/monitor-positions")
    async def monitor_positions(
        request: Request,
        token: Optional[str] = Query(None, description="API token"),
        send_notifications: bool = Query(True),
        force: bool = Query(False, description="Run outside market hours"),
    ):
        """Run one exit monitoring cycle over all ACTIVE positions."""
        verify_token(request, token)
        if not force:
            reason = _skip_reason()
            if reason:
                return {"success": False, "message": reason}

        svc = get_services()
        try:
            report = await svc.monitor.run_cycle(send_notifications=send_notifications)
        except Exception as e:
            logger.exception(f"Position monitoring failed: {e}")
            svc.db.log_error("monitor_cycle_error", "CronAPI", str(e))
            raise HTTPException(status_code=500, detail=str(e))

        return {
            "success": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "report": report.to_dict(),
        }

    @app.get("/api/positions")
    async def get_positions(
        request: Request,
        token: Optional[str] = Query(None, description="API token"),
        user_id: Optional[str] = Query(None),
        status: Optional[str] = Query(None, description="ACTIVE, EXITED or STOPPED"),
        limit: int = Query(100, ge=1, le=500),
    ):
        verify_token(request, token)
        positions = get_services().db.get_positions(user_id=user_id, status=status, limit=limit)
        return {
            "status": "success",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "count": len(positions),
            "positions": positions,
        }

    @app.get("/api/scans")
    async def get_scans(
        request: Request,
        token: Optional[str] = Query(None, description="API token"),
        limit: int = Query(10, ge=1, le=50),
    ):
        verify_token(request, token)
        scans = get_services().db.get_recent_scans(limit=limit)
        return {"status": "success", "count": len(scans), "scans": scans}

    @app.get("/api/errors")
    async def get_errors(
        request: Request,
        token: Optional[str] = Query(None, description="API token"),
        limit: int = Query(20, ge=1, le=100),
    ):
        """Get recent system errors."""
        verify_token(request, token)
        errors = get_services().db.get_recent_errors(limit=limit)
        return {"status": "success", "count": len(errors), "errors": errors}

    return app


app = create_app()
