from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from docsign.audit import configure_logging
from docsign.config import settings
from docsign.errors import SigningError
from docsign.routers.public import router as public_router
from docsign.routers.keys import router as keys_router
from docsign.routers.jwks import router as jwks_router
from docsign.routers.documents import router as documents_router
from docsign.routers.signatures import router as signatures_router
from docsign.routers.sessions import router as sessions_router
from docsign.routers.verification import router as verification_router
from docsign.middleware import BodySizeMiddleware, RequestIdMiddleware
from docsign.service import SigningService, build_service


def create_app(service: Optional[SigningService] = None) -> FastAPI:
    app = FastAPI(
        title="Docsign",
        version="1.0.0",
        docs_url="/docs",
        redoc_url=None,
    )
    app.state.service = service

    app.add_middleware(BodySizeMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SigningError)
    async def _signing_error(request: Request, exc: SigningError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            {"success": False, "error": "validation_error", "message": "Request validation failed", "details": {"errors": jsonable_encoder(exc.errors())}},
            status_code=422,
        )

    app.include_router(public_router)
    app.include_router(keys_router)
    app.include_router(jwks_router)
    app.include_router(documents_router)
    app.include_router(signatures_router)
    app.include_router(sessions_router)
    app.include_router(verification_router)

    @app.on_event("startup")
    def _startup():
        configure_logging(settings.log_level)
        if app.state.service is None:
            app.state.service = build_service(settings)

    return app


app = create_app()
