#!/usr/bin/env python3
"""
Command line tool for checking an OutboundIQ installation.

Sends a probe metric through the chosen transport, or queries the
recommendation and status endpoints.
"""
import argparse
import json
import logging
import sys
import time
from typing import List, Optional

from . import config
from .client import Client
from .configuration import TRANSPORT_NAMES
from .exceptions import ConfigurationError
from .transports import DeliveryOutcome

logger = logging.getLogger(__name__)

PROBE_URL = 'https://outboundiq.invalid/probe'


def setup_logging(log_level: str) -> None:
    """
    Setup logging with the specified log level.

    Args:
        log_level (str): Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='outboundiq',
        description='Send a probe metric or query OutboundIQ.',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument('--log-level', type=str, default=config.LOG_LEVEL,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Log level')
    parser.add_argument('--api-key', type=str, default=config.API_KEY,
                        help='API key (defaults to OUTBOUNDIQ_API_KEY)')
    parser.add_argument('--base-url', type=str, default=config.BASE_URL,
                        help='Base URL of the OutboundIQ API')
    parser.add_argument('--transport', type=str, default='sync', choices=TRANSPORT_NAMES,
                        help='Transport used to deliver the probe')
    parser.add_argument('--timeout', type=int, default=config.REQUEST_TIMEOUT,
                        help='Request timeout in seconds')
    parser.add_argument('--retry-attempts', type=int, default=config.MAX_RETRIES,
                        help='Transport-level retry attempts')

    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('ping', help='Track one probe metric and flush it')

    recommend = subparsers.add_parser('recommend', help='Get the recommended provider for a service')
    recommend.add_argument('service', help='Service name, e.g. payment-processing')
    recommend.add_argument('--request-id', type=str, help='Trace ID for correlation')

    provider = subparsers.add_parser('provider-status', help='Get status of a provider')
    provider.add_argument('slug', help='Provider slug, e.g. paystack')

    endpoint = subparsers.add_parser('endpoint-status', help='Get status of an endpoint')
    endpoint.add_argument('slug', help='Endpoint slug')

    return parser


def run_ping(client: Client) -> int:
    """
    Track a probe metric and flush it.

    Args:
        client (Client): The client to use

    Returns:
        int: Process exit code
    """
    start = time.perf_counter()
    client.track_api_call(
        url=PROBE_URL,
        method='GET',
        duration=(time.perf_counter() - start) * 1000,
        status_code=200,
        request_type='cli',
    )
    outcome = client.flush()

    if outcome is None or outcome is DeliveryOutcome.FAILED:
        logger.error("Probe metric was not delivered")
        return 1

    logger.info("Probe metric %s", outcome.value)
    return 0


def print_response(response) -> int:
    if response is None:
        logger.error("No response from OutboundIQ")
        return 1
    print(json.dumps(response, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main function to parse arguments and run the command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level)

    if not args.api_key:
        parser.error("an API key is required (--api-key or OUTBOUNDIQ_API_KEY)")

    try:
        client = Client(
            args.api_key,
            register_shutdown=False,
            base_url=args.base_url,
            transport=args.transport,
            timeout=args.timeout,
            retry_attempts=args.retry_attempts,
        )
    except ConfigurationError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    with client:
        if args.command == 'ping':
            return run_ping(client)
        if args.command == 'recommend':
            return print_response(client.recommend(args.service, request_id=args.request_id))
        if args.command == 'provider-status':
            return print_response(client.provider_status(args.slug))
        return print_response(client.endpoint_status(args.slug))


if __name__ == "__main__":
    sys.exit(main())
