from fastapi import FastAPI

from .errors import ConsultationError, consultation_error_handler


def create_app() -> FastAPI:
    app = FastAPI(title="Consultation System")

    app.add_exception_handler(ConsultationError, consultation_error_handler)

    from .routes import router as main_router
    app.include_router(main_router)

    return app
