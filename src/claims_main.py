import asyncio
import logging

from config import CFG
from logging_setup import configure_logging

configure_logging("claims")

from database import init_db
from api_server import create_api_app, start_api_server, stop_api_server
from ownership import ClaimWorkflowService
from ownership.maintenance import rate_limit_maintenance_loop


logger = logging.getLogger(__name__)


async def main() -> None:
    """Entry point for the claims API process."""
    await init_db()
    if not CFG.admin_ids:
        logger.warning("ADMIN_IDS is empty: claims in fraud_review can't be decided.")

    service = ClaimWorkflowService()
    api_runner = await start_api_server(create_api_app(service))

    # Stale rate-limit events garbage collection
    maintenance_task = asyncio.create_task(rate_limit_maintenance_loop(service.rate_limiter))

    try:
        await asyncio.Event().wait()
    finally:
        maintenance_task.cancel()
        await stop_api_server(api_runner)
        await service.close()


if __name__ == "__main__":
    asyncio.run(main())
