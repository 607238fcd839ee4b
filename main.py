from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import config
from contact_store import CheckedContactStore, ContactStore, SqliteContactStore
from db_models import IdentifyRequest, FinalResponse, AddContactRequest, HealthResponse
from errors import InvariantError, NotFoundError, StoreError, ValidationError
from logger import get_logger
from reconciler import Reconciler

logger = get_logger(__name__)


def build_store(db_path: str = None) -> ContactStore:
    store = SqliteContactStore(db_path)
    store.init_schema()
    if config.CHECK_INVARIANTS:
        return CheckedContactStore(store)
    return store


def create_app(store: ContactStore = None, cascade: bool = None) -> FastAPI:
    app = FastAPI(
        title="Bitespeed Contact Reconciliation API",
        version="1.0.0"
    )

    if store is None:
        store = build_store()
    app.state.store = store
    app.state.reconciler = Reconciler(store, cascade=cascade)

    @app.exception_handler(ValidationError)
    async def validation_failed(request: Request, exc: ValidationError):
        logger.warning("Rejected request to %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def contact_vanished(request: Request, exc: NotFoundError):
        logger.error("Contact changed underneath %s: %s", request.url.path, exc)
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.exception_handler(StoreError)
    async def store_failed(request: Request, exc: StoreError):
        logger.error("Store failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.exception_handler(InvariantError)
    async def graph_broken(request: Request, exc: InvariantError):
        logger.error("Contact graph invariant broken on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/")
    async def root():
        return {"message": "Bitespeed API is up"}

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            status="healthy",
            timeStamp=datetime.now().isoformat(),
            service=config.SERVICE_NAME,
        )

    # sync so FastAPI runs it in the threadpool; the reconciler blocks on key locks
    @app.post("/identify", response_model=FinalResponse)
    def identify(request: IdentifyRequest):
        return FinalResponse(contact=app.state.reconciler.identify(request))

    @app.post("/add-contact")
    def add_contact(request: AddContactRequest):
        """Add a new contact to the database with all fields"""
        if not request.email and not request.phoneNumber:
            raise ValidationError("Either email or phoneNumber must be provided")

        try:
            contact = app.state.store.create(
                email=request.email,
                phone=request.phoneNumber,
                linked_id=request.linkedId,
                precedence=request.linkPrecedence,
                contact_id=request.id,
                created_at=request.createdAt,
            )
        except (InvariantError, NotFoundError) as e:
            # a caller-supplied link that breaks the primary/secondary rules
            raise ValidationError(str(e)) from e
        return {"message": "Contact added successfully", "contact_id": contact.id}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)
