"""
Delete expired authorization codes and access tokens.

Expired credentials are already rejected when presented; this sweep only
reclaims storage. Run it from cron or a Kubernetes CronJob against the same
database the server uses:

    MCP_DATABASE_PATH=/var/lib/mcp/gateway.db python -m scripts.cleanup_expired
"""

import argparse
import logging
import time

from mcp_gateway.config import settings
from mcp_gateway.log import configure_logging
from mcp_gateway.store import create_store

logger = logging.getLogger("mcp-gateway.cleanup")


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete expired OAuth codes and tokens.")
    parser.add_argument(
        "--grace-seconds",
        type=float,
        default=0.0,
        help="Only delete records that expired at least this long ago (default: 0)",
    )
    args = parser.parse_args()

    configure_logging(settings.log_level)
    store = create_store(settings)
    deleted = store.delete_expired_before(time.time() - args.grace_seconds)

    logger.info("Expired credentials deleted", extra={"event_data": deleted})


if __name__ == "__main__":
    main()
