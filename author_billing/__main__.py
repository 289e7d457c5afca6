"""Entry point for running the billing service as a module."""

import argparse
import os
import sys

import uvicorn

from author_billing.config import Config, ConfigurationError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="author-billing",
        description="Author subscription billing - lifecycle engine and HTTP API",
    )
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"), help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8080")), help="Port (default: 8080)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
    )
    parser.add_argument("--log-format", choices=["json", "console"], default=os.getenv("LOG_FORMAT", "json"))
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "config/billing.yaml"),
        help="Path to billing.yaml (default: config/billing.yaml)",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate the configuration, print a summary and exit",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("RELOAD", "false").lower() == "true",
        help="Auto-reload on code changes (development only)",
    )
    return parser


def describe_config(config: Config) -> list[str]:
    """Human-readable summary of a loaded configuration."""
    sweeper = config.sweeper_settings
    lines = [
        f"Config: {config.config_path}",
        f"Currency: {config.currency}",
        f"Authors: {len(config.authors)}",
    ]
    for author in config.authors:
        trial = f", trial {author.trial_period}" if author.trial_period else ""
        lines.append(f"  {author.author_id}: {author.subscription_price}/month{trial}")
    lines.append(f"Discount codes: {len(config.discounts)}")
    lines.append(f"Gateway: {config.gateway_settings.provider} ({config.gateway_settings.payment_system})")
    lines.append(
        f"Sweeper: every {sweeper.interval_seconds}s" if sweeper.enabled else "Sweeper: disabled"
    )
    lines.append(f"Lifecycle events: {'enabled' if config.events_settings.enabled else 'disabled'}")
    return lines


def main() -> None:
    """Main entry point for the billing service."""
    args = build_parser().parse_args()

    # Refuse to start on a broken configuration instead of failing at first request
    try:
        config = Config(args.config)
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    if args.check_config:
        print("\n".join(describe_config(config)))
        return

    # Settings reach the app through the environment
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CONFIG_PATH"] = args.config

    if args.log_format == "console":
        print("=" * 60)
        print(f"Author Subscription Billing v0.1.0 on {args.host}:{args.port}")
        print("\n".join(describe_config(config)))
        print("=" * 60)

    try:
        uvicorn.run(
            "author_billing.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            reload=args.reload,
            access_log=False,  # RequestLoggingMiddleware logs requests
        )
    except KeyboardInterrupt:
        print("\nShutting down gracefully...")
        sys.exit(0)


if __name__ == "__main__":
    main()
