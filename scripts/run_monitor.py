#!/usr/bin/env python3
"""
Wallet Monitor Service - CLI Entry Point
========================================

Polls the Nodit data API for the given wallets and sends Telegram alerts
when new transactions match the configured rules.

Usage:
    # Watch a wallet, alert on incoming USDC >= 5
    python scripts/run_monitor.py --watch 0xabc... --chat-id 12345 --alert incoming_funds:USDC:5

    # Dry run (console alerts only, no Telegram)
    python scripts/run_monitor.py --watch 0xabc... --chat-id 12345 --dry-run

    # One forced check per wallet, then exit
    python scripts/run_monitor.py --watch 0xabc... --chat-id 12345 --once

    # Test Telegram configuration
    python scripts/run_monitor.py --test-telegram --chat-id 12345
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from walletwatch.alerts.telegram import send_test_alert
from walletwatch.config import config
from walletwatch.errors import InvalidAddressError, InvalidAlertError
from walletwatch.monitor import WalletMonitorService


def setup_logging(log_level: str = config.log_level, log_file: str = config.log_file):
    """Configure logging for the monitor service."""
    log_path = project_root / log_file
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Date-stamped log file (e.g., logs/monitor_2026-01-18.log)
    date_str = datetime.now().strftime("%Y-%m-%d")
    dated_log_file = log_path.parent / f"{log_path.stem}_{date_str}{log_path.suffix}"

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    file_handler = logging.FileHandler(dated_log_file)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Reduce noise from HTTP libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    root_logger.info(f"Logging to: {dated_log_file}")


def parse_alert(spec: str) -> dict:
    """Parse TYPE:TOKEN:AMOUNT into an alert definition."""
    parts = spec.split(":")
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(f"Alert must be TYPE:TOKEN:AMOUNT, got {spec!r}")
    alert_type, token, amount = parts
    return {"type": alert_type, "token": token, "amount": amount}


async def run(args) -> int:
    logger = logging.getLogger(__name__)
    service = WalletMonitorService(poll_interval=args.poll, dry_run=args.dry_run)

    try:
        for address in args.watch:
            status = await service.start_monitoring(address, args.chat_id, args.alert)
            logger.info(f"Monitoring {status['address']} with {len(status['alerts'])} alert(s)")

        if args.once:
            await service.scheduler.stop()
            for address in args.watch:
                result = await service.trigger_check(address)
                print(
                    f"{result.address}: {result.status} - {len(result.new_transactions)} new, "
                    f"{len(result.alerts)} alert(s)"
                )
            return 0

        # Runs until cancelled (Ctrl+C)
        await asyncio.Event().wait()
        return 0

    finally:
        await service.close()


def main():
    parser = argparse.ArgumentParser(
        description='Wallet Monitor Service',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Alert types: incoming_funds, outgoing_funds, nft_received, custom_amount

Examples:
  python scripts/run_monitor.py --watch 0xabc... --chat-id 12345 --alert incoming_funds:USDC:5
  python scripts/run_monitor.py --watch 0xabc... --chat-id 12345 --dry-run
  python scripts/run_monitor.py --test-telegram --chat-id 12345
        """
    )

    parser.add_argument(
        '--watch',
        action='append',
        default=[],
        metavar='ADDRESS',
        help='Wallet address to monitor (repeatable)'
    )

    parser.add_argument(
        '--chat-id',
        help='Telegram chat id that receives notifications'
    )

    parser.add_argument(
        '--alert',
        action='append',
        default=[],
        type=parse_alert,
        metavar='TYPE:TOKEN:AMOUNT',
        help='Alert rule applied to every watched wallet (repeatable)'
    )

    parser.add_argument(
        '--poll',
        type=float,
        default=config.poll_interval_sec,
        help=f'Scheduler interval in seconds (default: {config.poll_interval_sec})'
    )

    parser.add_argument(
        '--once',
        action='store_true',
        help='Run one forced check per wallet and exit'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print alerts to console instead of sending to Telegram'
    )

    parser.add_argument(
        '--test-telegram',
        action='store_true',
        help='Send a test notification to --chat-id and exit'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=config.log_level,
        help=f'Log level (default: {config.log_level})'
    )

    args = parser.parse_args()

    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    if not args.chat_id:
        parser.error("--chat-id is required")

    if args.test_telegram:
        print("Testing Telegram configuration...")
        try:
            success = send_test_alert(args.chat_id, dry_run=args.dry_run)
        except ValueError as e:
            print(f"Configuration error: {e}")
            sys.exit(1)
        if success:
            print("Test notification sent successfully!")
            sys.exit(0)
        print("Failed to send test notification. Check TELEGRAM_BOT_TOKEN and the chat id.")
        sys.exit(1)

    if not args.watch:
        parser.error("at least one --watch ADDRESS is required")

    print("\n" + "=" * 60)
    print("WALLET MONITOR SERVICE")
    print("=" * 60)
    print(f"Wallets:        {len(args.watch)}")
    print(f"Alert rules:    {len(args.alert)}")
    print(f"Poll interval:  {args.poll} seconds")
    print(f"Lookback:       {config.lookback_minutes} minutes")
    print(f"Dry run:        {args.dry_run}")
    print(f"Log level:      {args.log_level}")
    print("=" * 60)

    if not config.nodit_api_key:
        print("\nWARNING: NODIT_API_KEY not set - provider requests will likely be rejected.")

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        print("\n\nMonitor stopped by user")
        sys.exit(0)
    except (InvalidAddressError, InvalidAlertError) as e:
        print(f"\nInvalid input: {e}")
        sys.exit(2)
    except Exception as e:
        logger.exception(f"Monitor service error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
