#!/usr/bin/env python3
"""feedbridge: price-feed bridge between a job executor and a ledger oracle.

Triggers executor runs on a heartbeat, on price deviation and on new
ledger rounds, receives the executor's results over HTTP and pushes them
on-chain at most once per round.

Configure with environment variables or the equivalent CLI flags.
"""

import argparse
import asyncio
import logging
import os
import sys

from .src.Bridge import Bridge
from .src.Config import BridgeConfig, ConfigError, ExecutorCredentials

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def _env_int(name: str, default: str) -> int:
    value = os.environ.get(name) or default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"${name} {value!r} must be a number")


def _env_float(name: str, default: str) -> float:
    value = os.environ.get(name) or default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"${name} {value!r} must be a number")


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI parser; every option defaults from the environment.

    :raises ConfigError: If a numeric environment variable is not a number.
    """
    parser = argparse.ArgumentParser(
        description="feedbridge: executor to ledger price-feed bridge",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Local chain, executor on the default port
  python -m feedbridge.main --executor-url http://localhost:6691 \\
      --from agoric1... --ledger-rpc http://localhost:26657

Environment variables (CLI args take precedence):
  PORT, EI_CHAINLINKURL, POLL_INTERVAL, PRICE_QUERY_INTERVAL, DECIMAL_PLACES,
  PRICE_DEVIATION_PERC, SUBMIT_RETRIES, AGORIC_RPC, AGORIC_NET, AGORIC_CLI,
  STATE_FILE, CREDENTIALS_FILE, OFFERS_FILE, FROM
""",
    )

    parser.add_argument(
        "--port",
        type=int,
        help="Port for the executor-facing HTTP server (default: 3000)",
        default=_env_int("PORT", "3000"),
    )

    parser.add_argument(
        "--executor-url",
        dest="executor_url",
        type=str,
        help="Executor base URL where job runs are requested (required)",
        default=os.environ.get("EI_CHAINLINKURL"),
    )

    parser.add_argument(
        "--poll-interval",
        dest="poll_interval",
        type=int,
        help="Seconds between heartbeat requests (default: 60)",
        default=_env_int("POLL_INTERVAL", "60"),
    )

    parser.add_argument(
        "--price-query-interval",
        dest="price_query_interval",
        type=int,
        help="Seconds between round/deviation checks (default: 12)",
        default=_env_int("PRICE_QUERY_INTERVAL", "12"),
    )

    parser.add_argument(
        "--decimal-places",
        dest="decimal_places",
        type=int,
        help="Decimal places of executor results (default: 6)",
        default=_env_int("DECIMAL_PLACES", "6"),
    )

    parser.add_argument(
        "--deviation-threshold",
        dest="deviation_threshold",
        type=float,
        help="Price deviation percent that triggers an update (default: 1)",
        default=_env_float("PRICE_DEVIATION_PERC", "1"),
    )

    parser.add_argument(
        "--submit-retries",
        dest="submit_retries",
        type=int,
        help="Attempts for executor requests and price pushes (default: 3)",
        default=_env_int("SUBMIT_RETRIES", "3"),
    )

    parser.add_argument(
        "--ledger-rpc",
        dest="ledger_rpc",
        type=str,
        help="Ledger node RPC URL (default: http://0.0.0.0:26657)",
        default=os.environ.get("AGORIC_RPC") or "http://0.0.0.0:26657",
    )

    parser.add_argument(
        "--chain-id",
        dest="chain_id",
        type=str,
        help="Chain id used for transactions (default: agoric)",
        default=os.environ.get("AGORIC_NET") or "agoric",
    )

    parser.add_argument(
        "--cli-binary",
        dest="cli_binary",
        type=str,
        help="Chain CLI used to broadcast transactions (default: agd)",
        default=os.environ.get("AGORIC_CLI") or "agd",
    )

    parser.add_argument(
        "--state-file",
        dest="state_file",
        type=str,
        help="Persisted state file (default: data/middleware_state.json)",
        default=os.environ.get("STATE_FILE", "data/middleware_state.json"),
    )

    parser.add_argument(
        "--credentials-file",
        dest="credentials_file",
        type=str,
        help="Executor credentials file (default: config/ei_credentials.json)",
        default=os.environ.get("CREDENTIALS_FILE", "config/ei_credentials.json"),
    )

    parser.add_argument(
        "--offers-file",
        dest="offers_file",
        type=str,
        help="Job name to anchor offer id map (default: config/offers.json)",
        default=os.environ.get("OFFERS_FILE", "config/offers.json"),
    )

    parser.add_argument(
        "--from",
        dest="account",
        type=str,
        help="Account address that submits prices (required)",
        default=os.environ.get("FROM"),
    )

    parser.add_argument(
        "--no-align",
        dest="align_start",
        action="store_false",
        help="Start the drivers immediately instead of on the next minute",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    return parser


def config_from_args(args: argparse.Namespace) -> BridgeConfig:
    """Build and validate the bridge config from parsed arguments.

    :raises ConfigError: If any setting is invalid.
    """
    config = BridgeConfig(
        executor_url=args.executor_url,
        account=args.account,
        port=args.port,
        poll_interval=args.poll_interval,
        price_query_interval=args.price_query_interval,
        decimal_places=args.decimal_places,
        deviation_threshold=args.deviation_threshold,
        submit_retries=args.submit_retries,
        ledger_rpc=args.ledger_rpc,
        chain_id=args.chain_id,
        cli_binary=args.cli_binary,
        state_file=args.state_file,
        credentials_file=args.credentials_file,
        offers_file=args.offers_file,
        align_start=args.align_start,
    )
    config.validate()
    return config


def main() -> None:
    """Main entry point for the feedbridge CLI."""
    try:
        parser = build_parser()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(2)

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = config_from_args(args)
        credentials = ExecutorCredentials.from_file(config.credentials_file)
    except ConfigError as e:
        parser.error(str(e))

    # Log configuration
    logger.info("=" * 60)
    logger.info("feedbridge - executor to ledger price-feed bridge")
    logger.info("=" * 60)
    logger.info(f"Executor:          {config.executor_url}")
    logger.info(f"Ledger RPC:        {config.ledger_rpc} ({config.chain_id})")
    logger.info(f"Account:           {config.account}")
    logger.info(f"Listen Port:       {config.port}")
    logger.info(f"Poll Interval:     {config.poll_interval}s")
    logger.info(f"Query Interval:    {config.price_query_interval}s")
    logger.info(f"Deviation:         {config.deviation_threshold}%")
    logger.info(f"Decimal Places:    {config.decimal_places}")
    logger.info(f"Submit Retries:    {config.submit_retries}")
    logger.info(f"State File:        {config.state_file}")
    logger.info(f"Offers File:       {config.offers_file}")
    logger.info("=" * 60)

    try:
        bridge = Bridge(config, credentials)
        asyncio.run(bridge.run())
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
