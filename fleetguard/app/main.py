from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from fleetguard.app.core.logging import get_logger, setup_logging
from fleetguard.app.middleware.admission import AdmissionMiddleware
from fleetguard.app.services.admission import AdmissionController, get_admission_controller


def create_app(controller: Optional[AdmissionController] = None) -> FastAPI:
    """Create a FastAPI application guarded by admission control.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)
    controller = controller or get_admission_controller()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start utilization polling on startup; stop it and close the controller's stores on shutdown."""
        if controller.poller is not None:
            await controller.poller.start()
        logger.info("Admission control ready")
        try:
            yield
        finally:
            if controller.poller is not None:
                await controller.poller.stop()
            await controller.close()
            logger.info("Admission control stopped")

    app = FastAPI(title="fleetguard", lifespan=lifespan)
    app.add_middleware(AdmissionMiddleware, controller=controller)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app
