import asyncio
import structlog

from paylink.service import PaymentCore

logger = structlog.get_logger()


async def run_expiry_sweep(core: PaymentCore, interval_seconds: float = 60):
    """Background task that persists EXPIRED for PENDING requests past their expiry"""
    while True:
        try:
            await asyncio.sleep(interval_seconds)

            try:
                expired = await core.sweep_expired()
                if expired > 0:
                    logger.info("expired_requests_swept", count=expired)
            except Exception as e:
                logger.error("expiry_sweep_error", error=str(e))

            # Pick up operator fee changes even when no quotes are being issued
            try:
                await core.fee_config.get()
            except Exception as e:
                logger.error("fee_config_refresh_error", error=str(e))

        except asyncio.CancelledError:
            logger.info("expiry_sweep_stopped")
            raise
