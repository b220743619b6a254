"""
Supply Chain Product Service API

FastAPI service for product NFTs: pinning uploads, product creation and
listing, purchases with certificate/metadata updates, and on-chain delivery
journeys.

Endpoints:
- POST /upload-image - Pin a product image
- POST /upload-metadata - Build and pin a metadata document
- GET /fetch-metadata/{cid} - Metadata document from the gateway
- POST /start-journey - Start the on-chain delivery journey
- GET|DELETE /journeys/{token_id} - Journey status / cancel
- GET /categories - Category form schemas
- GET|POST /products, DELETE /products/{token_id}
- POST /products/{token_id}/purchase
- POST /products/{token_id}/resume-documentation
- GET /purchases/pending
- GET /products/{token_id}/tracking, /tracking-history, /versions, /certificate-qr
- GET /health
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import FastAPI, UploadFile, File, Form, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from blockchain.contracts import ContractCallError, ContractRevertError, SupplyChainContracts
from certificate.certificate_builder import CertificateError
from certificate.qrcode_gen import generate_qr_png_bytes
from database import get_db, get_document_chain, METADATA, CERTIFICATE
from ipfs.pinning import PinataClient, PinningError
from journey.simulator import JourneyError, JourneyRegistry
from marketplace.catalog import ProductCatalog, ProductImage, ProductOwnershipError
from marketplace.product_store import ProductStore
from marketplace.purchase import (
    DocumentationPendingError,
    ProductNotFoundError,
    PurchaseOrchestrator,
    PurchaseValidationError,
    RegistryNotApprovedError,
)
from metadata.metadata_builder import (
    CATEGORY_FIELDS,
    MetadataError,
    ProductForm,
    ProductFormError,
    build_basic_metadata,
    build_metadata,
)
from service.dependencies import (
    get_catalog,
    get_contracts,
    get_journey_registry,
    get_orchestrator,
    get_pinning,
    get_session_factory,
    get_store,
    journey_registry,
    running_journey_registry,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    journey_registry().bind(asyncio.get_running_loop())
    yield
    registry = running_journey_registry()
    if registry is not None:
        await registry.cancel_all()


app = FastAPI(
    title="Supply Chain Product Service",
    description="Product NFTs with pinned certificates and tracked delivery",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error mapping

def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(ProductFormError)
@app.exception_handler(PurchaseValidationError)
@app.exception_handler(JourneyError)
@app.exception_handler(MetadataError)
@app.exception_handler(CertificateError)
async def validation_error_handler(request: Request, exc: Exception):
    return _error(400, str(exc))


@app.exception_handler(ProductNotFoundError)
async def not_found_handler(request: Request, exc: ProductNotFoundError):
    return _error(404, str(exc))


@app.exception_handler(ProductOwnershipError)
async def ownership_error_handler(request: Request, exc: ProductOwnershipError):
    return _error(403, str(exc))


@app.exception_handler(RegistryNotApprovedError)
async def not_approved_handler(request: Request, exc: RegistryNotApprovedError):
    return _error(409, str(exc), tokenId=exc.token_id, owner=exc.owner)


@app.exception_handler(ContractRevertError)
async def revert_handler(request: Request, exc: ContractRevertError):
    return _error(409, exc.reason, function=exc.function)


@app.exception_handler(ContractCallError)
async def contract_error_handler(request: Request, exc: ContractCallError):
    logger.error(f"Contract call failed: {exc}")
    return _error(500, str(exc), txHash=exc.tx_hash)


@app.exception_handler(PinningError)
async def pinning_error_handler(request: Request, exc: PinningError):
    return _error(502, str(exc), transient=exc.transient)


@app.exception_handler(DocumentationPendingError)
async def documentation_pending_handler(request: Request, exc: DocumentationPendingError):
    return JSONResponse(status_code=202, content={
        "status": "documentation_pending",
        "tokenId": exc.token_id,
        "failedStep": exc.failed_step,
        "error": str(exc.cause),
        "purchase": exc.record,
    })


# Request models

class UploadMetadataRequest(BaseModel):
    title: str
    location: str
    imageCID: str
    category: Optional[str] = None
    extraFields: Dict[str, str] = Field(default_factory=dict)
    manufacturer: Optional[str] = None
    docCID: Optional[str] = None


class StartJourneyRequest(BaseModel):
    tokenId: int
    customerAddress: str
    customerLocation: str
    transferOnDelivery: bool = True


class PurchaseRequest(BaseModel):
    deliveryLocation: str
    buyer: Optional[str] = None
    simulateJourney: bool = False


# Endpoints

@app.get("/", response_model=dict)
async def root():
    return {
        "service": "Supply Chain Product Service",
        "status": "operational",
        "version": "1.0.0",
    }


@app.get("/health")
async def health():
    return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/upload-image")
def upload_image(image: Optional[UploadFile] = File(None), pinning: PinataClient = Depends(get_pinning)):
    if image is None or not image.filename:
        raise HTTPException(status_code=400, detail="No image file provided")
    content = image.file.read()
    result = pinning.upload(content, image.filename, image.content_type).unwrap()
    return {"imageCID": result.cid, "url": result.url}


@app.post("/upload-metadata")
def upload_metadata(body: UploadMetadataRequest, pinning: PinataClient = Depends(get_pinning)):
    if body.category:
        form = ProductForm(body.title, body.location, body.category, body.extraFields)
        form.validate()
        metadata = build_metadata(form, body.imageCID, body.manufacturer or "", body.docCID)
    else:
        metadata = build_basic_metadata(body.title, body.location, body.imageCID)
    result = pinning.upload_json(metadata, "metadata.json").unwrap()
    return {"metadataCID": result.cid, "metadata": metadata}


@app.get("/fetch-metadata/{cid}")
def fetch_metadata(cid: str, pinning: PinataClient = Depends(get_pinning)):
    result = pinning.fetch_json(cid)
    if not result.ok:
        return _error(502, result.error or "Failed to fetch metadata")
    return result.data


@app.post("/start-journey")
async def start_journey(
    body: StartJourneyRequest,
    contracts: SupplyChainContracts = Depends(get_contracts),
    journeys: JourneyRegistry = Depends(get_journey_registry),
    store: ProductStore = Depends(get_store),
):
    """
    Start tracking on chain and add one checkpoint per interval. With
    ``transferOnDelivery`` the registry transfer runs after the last step.
    """
    if journeys.is_running(body.tokenId):
        raise HTTPException(status_code=409, detail=f"Journey already running for token {body.tokenId}")

    logger.info(f"Starting journey for product {body.tokenId} to customer {body.customerAddress}")
    on_complete = contracts.buy_product if body.transferOnDelivery else None
    steps = journeys.start(body.tokenId, body.customerLocation, customer=body.customerAddress, on_complete=on_complete)
    store.start_tracking(body.tokenId, steps[-1].location)

    interval = journeys.interval_seconds
    return {
        "success": True,
        "message": "Journey started successfully",
        "steps": len(steps),
        "interval": f"{interval:g} seconds" if interval is not None else None,
    }


@app.get("/journeys/{token_id}")
async def journey_status(token_id: int, journeys: JourneyRegistry = Depends(get_journey_registry)):
    status = journeys.status(token_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"No journey for token {token_id}")
    return status


@app.delete("/journeys/{token_id}")
async def cancel_journey(token_id: int, journeys: JourneyRegistry = Depends(get_journey_registry)):
    if journeys.status(token_id) is None:
        raise HTTPException(status_code=404, detail=f"No journey for token {token_id}")
    return {"tokenId": token_id, "cancelled": journeys.cancel(token_id)}


@app.get("/categories")
async def categories():
    return {
        category: [{"name": name, "label": label} for name, label in fields]
        for category, fields in CATEGORY_FIELDS.items()
    }


@app.get("/products")
def list_products(
    account: str = Query(...),
    role: str = Query("customer", pattern="^(manufacturer|customer)$"),
    catalog: ProductCatalog = Depends(get_catalog),
):
    if role == "manufacturer":
        return {"products": [p.to_dict() for p in catalog.load_manufacturer_products(account)]}
    loaded = catalog.load_customer_products(account)
    return {key: [p.to_dict() for p in products] for key, products in loaded.items()}


@app.post("/products")
def create_product(
    title: str = Form(...),
    location: str = Form(...),
    category: str = Form(...),
    extraFields: str = Form("{}"),
    manufacturer: Optional[str] = Form(None),
    image: UploadFile = File(...),
    basePdf: Optional[UploadFile] = File(None),
    catalog: ProductCatalog = Depends(get_catalog),
):
    try:
        extra = json.loads(extraFields or "{}")
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"extraFields must be a JSON object: {e}")
    if not isinstance(extra, dict):
        raise HTTPException(status_code=400, detail="extraFields must be a JSON object")

    form = ProductForm(title, location, category, {k: str(v) for k, v in extra.items()})
    base_pdf = basePdf.file.read() if basePdf is not None and basePdf.filename else None
    created = catalog.create_product(
        form,
        ProductImage(image.file.read(), image.filename or "image", image.content_type),
        manufacturer,
        base_pdf,
    )
    return {
        "tokenId": created.token_id,
        "imageCID": created.image_cid,
        "metadataCID": created.metadata_cid,
        "certificateCID": created.certificate_cid,
        "metadata": created.metadata,
        "mintTxHash": created.mint_tx_hash,
        "registerTxHash": created.register_tx_hash,
        "product": created.product.to_dict(),
    }


@app.delete("/products/{token_id}")
def remove_product(token_id: int, account: Optional[str] = None, catalog: ProductCatalog = Depends(get_catalog)):
    product = catalog.remove_product(token_id, account)
    return {"success": True, "product": product.to_dict()}


@app.post("/products/{token_id}/purchase")
async def purchase_product(
    token_id: int,
    body: PurchaseRequest,
    orchestrator: PurchaseOrchestrator = Depends(get_orchestrator),
):
    outcome = await run_in_threadpool(orchestrator.purchase, token_id, body.deliveryLocation, body.buyer)
    if body.simulateJourney:
        outcome.journey_steps = orchestrator.start_journey(
            token_id, body.deliveryLocation.strip(), orchestrator.contracts.account_address
        )
    return outcome.to_dict()


@app.post("/products/{token_id}/resume-documentation")
def resume_documentation(token_id: int, orchestrator: PurchaseOrchestrator = Depends(get_orchestrator)):
    return orchestrator.resume_documentation(token_id).to_dict()


@app.get("/purchases/pending")
def pending_purchases(orchestrator: PurchaseOrchestrator = Depends(get_orchestrator)):
    return {"pending": orchestrator.pending_documentation()}


@app.get("/products/{token_id}/tracking")
async def tracking(
    token_id: int,
    store: ProductStore = Depends(get_store),
    journeys: JourneyRegistry = Depends(get_journey_registry),
):
    state = store.tracking(token_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"No tracking for token {token_id}")
    data = state.to_dict()
    journey = journeys.status(token_id)
    data["journey"] = journey["status"] if journey else None
    return data


@app.get("/products/{token_id}/tracking-history")
def tracking_history(token_id: int, catalog: ProductCatalog = Depends(get_catalog)):
    return {
        "tokenId": token_id,
        "checkpoints": [
            {"step": c.step, "location": c.location, "timestamp": c.timestamp}
            for c in catalog.tracking_history(token_id)
        ],
    }


@app.get("/products/{token_id}/versions")
def document_versions(token_id: int, session_factory=Depends(get_session_factory)):
    with get_db(session_factory) as db:
        return {
            "tokenId": token_id,
            "metadata": [v.to_dict() for v in get_document_chain(db, token_id, METADATA)],
            "certificate": [v.to_dict() for v in get_document_chain(db, token_id, CERTIFICATE)],
        }


@app.get("/products/{token_id}/certificate-qr")
def certificate_qr(token_id: int, store: ProductStore = Depends(get_store)):
    product = store.get(token_id)
    if product is None or not product.certificate_url:
        raise HTTPException(status_code=404, detail=f"No certificate for token {token_id}")
    return Response(content=generate_qr_png_bytes(product.certificate_url), media_type="image/png")


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3001")))
