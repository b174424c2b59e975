#!/usr/bin/env python3
"""
Standalone trading service runner.

Starts the chat-event receiver, the signal engine with its Blofin order
stream, and (optionally) the dashboard API.

Usage:
    python run_trading.py [--live] [--alert-port 8765] [--dashboard-port 8000] [--no-dashboard]

Options:
    --live             Trade on the production hosts (default is BLOFIN_DEMO, true unless set)
    --alert-port       Port for POST /message and POST /message-edit
    --dashboard-port   Port for the dashboard API
    --no-dashboard     Don't start the dashboard API

To stop: Press Ctrl+C
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

import uvicorn

from perptrader.alert_service import AlertService, DEFAULT_PORT as DEFAULT_ALERT_PORT
from perptrader.dashboard import create_app, DEFAULT_PORT as DEFAULT_DASHBOARD_PORT
from perptrader.database import create_db_engine, create_session_factory, init_db
from perptrader.engine import SignalEngine
from perptrader.events import OutcomeBus, Outcome
from perptrader.live_trading_service import TradingService
from perptrader.order_store import OrderStore
from perptrader.preference_store import PreferenceStore
from perptrader.rate_limit import create_blofin_limiters
from perptrader.signal_store import SignalStore
from perptrader.trade_logger import configure_trade_log
from perptrader.trading import get_exchange_client
from perptrader.trading.blofin_stream import BlofinOrderStream

LOGS_DIR = Path('logs')
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Configure logging - both stdout and file
logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s [%(name)s] %(message)s',
    datefmt='%H:%M:%S',
)
logger = logging.getLogger(__name__)

# Add file handler for all trading logs (tail -f logs/dev.log)
dev_handler = logging.FileHandler(LOGS_DIR / 'dev.log')
dev_handler.setFormatter(logging.Formatter(
    '%(asctime)s [%(name)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
))
logging.getLogger().addHandler(dev_handler)

# Reduce noise from some loggers
logging.getLogger('urllib3').setLevel(logging.WARNING)
logging.getLogger('websockets').setLevel(logging.WARNING)

# Exchange actions go to logs/trades.log (tail -f logs/trades.log)
configure_trade_log(LOGS_DIR)

_shutdown = False


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def log_outcome(outcome: Outcome):
    """Mirror warnings and failures from the outcome stream into the log."""
    if outcome.severity == 'info':
        return
    inst_id = outcome.signal.inst_id if outcome.signal else outcome.data.get('inst_id', '-')
    detail = outcome.reason or outcome.step or ''
    level = logging.ERROR if outcome.severity in ('error', 'critical') else logging.WARNING
    logger.log(level, f"[{inst_id}] {outcome.type}: {detail}")


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global _shutdown
    logger.info("\nShutdown signal received...")
    _shutdown = True


def main():
    parser = argparse.ArgumentParser(description='Run the perp signal trading service')
    parser.add_argument('--live', action='store_true', help='Trade on the production hosts')
    parser.add_argument('--alert-port', type=int,
                        default=int(os.getenv('ALERT_PORT', DEFAULT_ALERT_PORT)),
                        help='Port for chat-gateway events')
    parser.add_argument('--dashboard-port', type=int,
                        default=int(os.getenv('DASHBOARD_PORT', DEFAULT_DASHBOARD_PORT)),
                        help='Port for the dashboard API')
    parser.add_argument('--no-dashboard', action='store_true', help="Don't start the dashboard API")
    args = parser.parse_args()

    demo = False if args.live else _env_flag('BLOFIN_DEMO', True)
    mode_str = "DEMO" if demo else "LIVE"

    print(f"\n{'='*60}")
    print(f"  Perp Signal Trader - {mode_str} MODE")
    print(f"{'='*60}\n")

    # Initialize database
    logger.info("Initializing database...")
    db_engine = create_db_engine()
    init_db(db_engine)
    session_factory = create_session_factory(db_engine)

    preference_store = PreferenceStore(session_factory)
    signal_store = SignalStore(session_factory)
    order_store = OrderStore(session_factory)

    outcomes = OutcomeBus()
    outcomes.subscribe(log_outcome)

    # Exchange client + order stream
    trading_limiter, general_limiter = create_blofin_limiters()
    try:
        client = get_exchange_client(demo=demo, trading_limiter=trading_limiter, general_limiter=general_limiter)
    except ValueError as e:
        logger.error(f"Cannot create exchange client: {e}")
        sys.exit(1)
    logger.info(f"Exchange client: {client.name} (demo={client.is_demo})")

    engine = SignalEngine(client, preference_store, signal_store, order_store, outcomes=outcomes)
    service = TradingService(engine, order_stream=BlofinOrderStream(demo=demo))

    # Start alert service (this process must own it for callbacks to work)
    logger.info("Starting alert service...")
    alert_service = AlertService(port=args.alert_port)
    try:
        alert_service.start()
    except OSError as e:
        logger.error(f"Port {args.alert_port} unavailable: {e}")
        sys.exit(1)
    alert_service.set_channel_filter(lambda: preference_store.load_preferences().channel_id)

    # Register signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(f"Starting trading service ({mode_str} mode)...")
    if not service.start():
        logger.error("Failed to start trading service")
        alert_service.stop()
        sys.exit(1)
    alert_service.set_callbacks(service.submit_message, service.submit_edit)

    dashboard_server = None
    if not args.no_dashboard:
        app = create_app(preference_store, signal_store, order_store, outcomes, service=service)
        config = uvicorn.Config(app, host='0.0.0.0', port=args.dashboard_port, log_level='warning')
        dashboard_server = uvicorn.Server(config)
        threading.Thread(target=dashboard_server.run, daemon=True, name="Dashboard").start()
        logger.info(f"Dashboard API on port {args.dashboard_port}")

    logger.info("Trading service started successfully!")
    logger.info("Press Ctrl+C to stop\n")

    try:
        while service.is_running and not _shutdown:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("Stopping trading service...")
        alert_service.set_callbacks(None, None)
        alert_service.stop()
        service.stop()
        if dashboard_server:
            dashboard_server.should_exit = True
        logger.info("Trading service stopped.")


if __name__ == '__main__':
    main()
