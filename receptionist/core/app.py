"""
FastAPI application factory.
Creates and configures the main FastAPI application instance.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from receptionist.core.logging import setup_logging
from receptionist.api.routes import (
    twilio_routes, retell_routes, web_routes, whatsapp_routes, booking_routes, public_routes
)
from receptionist.db.database import init_db

# Set up logging
setup_logging()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: The configured application instance
    """

    app = FastAPI(
        title="Receptionist Orchestrator API",
        description="Multi-tenant voice and chat session orchestrator",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        """
        Initialize the database and the long-lived HTTP clients.
        """
        logger = logging.getLogger(__name__)

        try:
            logger.info("🚀 Starting service and database initialization...")

            await init_db()

            from receptionist.services.booking_client import booking_client
            from receptionist.services.notification_service import notification_dispatcher
            from receptionist.services.webhook_reconciler import webhook_reconciler
            from receptionist.services.messaging_service import (
                evolution_client, sms_session_manager, whatsapp_session_manager
            )
            from receptionist.services.web_chat_service import chat_session_manager

            await booking_client.initialize()
            await notification_dispatcher.sender.initialize()
            await webhook_reconciler.initialize()
            chat_session_manager.start()
            sms_session_manager.start()
            whatsapp_session_manager.start()
            await evolution_client.initialize()

            logger.info("✅ Service and database initialization completed")
        except Exception as e:
            # Log error but don't prevent server startup
            logger.error(f"❌ Failed to initialize services during startup: {e}")

    @app.on_event("shutdown")
    async def shutdown_event():
        """
        Clean up resources when the application shuts down.
        """
        logger = logging.getLogger(__name__)

        try:
            from receptionist.services.booking_client import booking_client
            from receptionist.services.notification_service import notification_dispatcher
            from receptionist.services.webhook_reconciler import webhook_reconciler
            from receptionist.services.messaging_service import (
                evolution_client, sms_session_manager, whatsapp_session_manager
            )
            from receptionist.services.web_chat_service import chat_session_manager

            await chat_session_manager.shutdown()
            await sms_session_manager.shutdown()
            await whatsapp_session_manager.shutdown()
            await evolution_client.cleanup()
            await notification_dispatcher.shutdown()
            await webhook_reconciler.cleanup()
            await booking_client.cleanup()

            logger.info("All resources cleaned up")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    # Include routers
    app.include_router(twilio_routes.router)
    app.include_router(retell_routes.router)
    app.include_router(web_routes.router)
    app.include_router(whatsapp_routes.router)
    app.include_router(booking_routes.router)
    app.include_router(public_routes.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


# Create the application instance
app = create_app()
