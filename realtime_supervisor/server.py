"""
HTTP endpoints backing the realtime client.

* ``GET /api/session`` mints an ephemeral realtime key with the server-side
  API key, so the long-lived key never reaches the client.
* ``POST /api/responses`` proxies a Responses API body for the supervisor.
* ``GET /health`` for liveness checks.
"""

import logging
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from openai import OpenAIError

from .credentials import OpenAICredentialProvider
from .errors import CredentialError, ToolResolutionError
from .supervisor import OpenAIResponsesClient, ResponsesClient

logger = logging.getLogger("RealtimeSupervisorServer")


def create_app(
    credential_provider_factory: Callable[[], OpenAICredentialProvider] = OpenAICredentialProvider,
    responses_client_factory: Callable[[], ResponsesClient] = OpenAIResponsesClient,
) -> FastAPI:
    """Build the app; factories are called per request so keys are read lazily."""
    app = FastAPI(
        title="Realtime Supervisor API",
        description="Ephemeral session keys and supervisor Responses proxy",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/api/session")
    async def session():
        """Create a realtime session and return its payload, client secret included."""
        provider = credential_provider_factory()
        if not provider.api_key:
            logger.error("OPENAI_API_KEY is missing")
            return JSONResponse({"error": "API key not configured"}, status_code=500)
        try:
            payload = await provider.create_session()
        except CredentialError as e:
            logger.error(f"Error in /api/session: {e}")
            status_code = e.status_code or 500
            detail = str(e) if e.status_code else "Internal Server Error"
            return JSONResponse({"error": detail}, status_code=status_code)
        return payload

    @app.post("/api/responses")
    async def responses(body: Dict[str, Any]):
        """Forward a Responses API request body."""
        try:
            client = responses_client_factory()
            result = await client.create(body)
        except (ToolResolutionError, OpenAIError) as e:
            logger.error(f"Error in /api/responses: {e}", exc_info=True)
            return JSONResponse({"error": "Something went wrong."}, status_code=500)
        if result.get("error"):
            return JSONResponse({"error": result["error"]}, status_code=500)
        return result

    return app


app = create_app()


def main(argv: Optional[list] = None):
    """Main entry point for the API server."""
    import argparse

    from .cli import setup_logging

    parser = argparse.ArgumentParser(description="Realtime Supervisor API Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    args = parser.parse_args(argv)

    log = setup_logging()
    log.info("=" * 60)
    log.info("Realtime Supervisor API Server")
    log.info("=" * 60)
    log.info(f"Host: {args.host}")
    log.info(f"Port: {args.port}")
    log.info("=" * 60)

    uvicorn.run(
        "realtime_supervisor.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
