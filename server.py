import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import stripe
from fastapi import FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from pixelgrid.backend import Backend
from pixelgrid.broadcast import QueueSubscriber
from pixelgrid.errors import InvalidGatewayEvent, PixelError

logger = logging.getLogger("pixelgrid_backend")


class SingleQuoteRequest(BaseModel):
    x: int
    y: int
    color: str = Field(min_length=1, max_length=32)
    price: int
    owner_id: Optional[str] = None
    owner_name: Optional[str] = ""
    wants_protection: bool = False
    link: Optional[str] = None


class BulkCell(BaseModel):
    x: int
    y: int
    color: str = Field(min_length=1, max_length=32)
    price: int
    wants_protection: bool = False
    link: Optional[str] = None


class BulkQuoteRequest(BaseModel):
    cells: List[BulkCell]
    total_amount: int
    owner_id: Optional[str] = None
    owner_name: Optional[str] = ""


def _pixel_error(e: PixelError) -> HTTPException:
    return HTTPException(status_code=400, detail=e.to_dict())


def create_app(backend: Backend | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.backend is None:
            app.state.backend = Backend()
        yield

    app = FastAPI(lifespan=lifespan)
    app.state.backend = backend

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins for dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------
    # Read API
    # -----------------------

    @app.get("/api/pixels")
    def list_pixels(request: Request):
        return request.app.state.backend.list_cells()

    @app.get("/api/pixels/config")
    def pixel_config(request: Request):
        return request.app.state.backend.config.as_public_dict()

    @app.get("/api/pixels/free-count/{owner_id}")
    def free_count(owner_id: str, request: Request):
        try:
            remaining = request.app.state.backend.free_allocation(owner_id)
        except PixelError as e:
            raise _pixel_error(e)
        return {"ownerId": owner_id, "remaining": remaining}

    @app.get("/api/pixels/{x}/{y}")
    def get_pixel(x: int, y: int, request: Request):
        cell = request.app.state.backend.get_cell(x, y)
        if cell is None:
            raise HTTPException(status_code=404, detail="Pixel not found")
        return cell

    @app.get("/api/pixels/{x}/{y}/history")
    def pixel_history(x: int, y: int, request: Request):
        return request.app.state.backend.cell_history(x, y)

    # -----------------------
    # Quote API
    # -----------------------

    @app.post("/api/payments/quote")
    def quote_single(body: SingleQuoteRequest, request: Request):
        backend = request.app.state.backend
        try:
            quote = backend.quotes.quote_single(
                x=body.x,
                y=body.y,
                color=body.color,
                price=body.price,
                owner_id=body.owner_id,
                owner_name=body.owner_name,
                wants_protection=body.wants_protection,
                link=body.link,
            )
        except PixelError as e:
            raise _pixel_error(e)
        return quote.to_dict()

    @app.post("/api/payments/bulk-quote")
    def quote_bulk(body: BulkQuoteRequest, request: Request):
        backend = request.app.state.backend
        try:
            quote = backend.quotes.quote_bulk(
                cells=[cell.model_dump() for cell in body.cells],
                total_amount=body.total_amount,
                owner_id=body.owner_id,
                owner_name=body.owner_name,
            )
        except PixelError as e:
            raise _pixel_error(e)
        return quote.to_dict()

    # -----------------------
    # Settlement webhook
    # -----------------------

    @app.post("/api/payments/webhook")
    async def payment_webhook(request: Request, stripe_signature: Optional[str] = Header(default=None)):
        backend = request.app.state.backend
        payload = await request.body()

        try:
            event = backend.gateway.parse_event(payload, stripe_signature)
        except stripe.SignatureVerificationError as e:
            logger.warning("Rejected webhook with bad signature: %s", e)
            raise HTTPException(status_code=400, detail="Invalid signature")
        except InvalidGatewayEvent as e:
            # signed but undecodable; retrying delivery will not fix it
            logger.error("Unusable webhook payload: %s", e.message)
            return {"received": True, "state": "rejected", "error": e.code, "message": e.message}

        if event is None:
            return {"received": True, "state": "ignored"}

        try:
            report = await run_in_threadpool(backend.settlement.settle, event)
        except InvalidGatewayEvent as e:
            # retrying a malformed event will not fix it
            logger.error("Unusable settlement event %s: %s", event.ref, e.message)
            return {"received": True, "state": "rejected", "error": e.code, "message": e.message}

        return {"received": True, **report.to_dict()}

    @app.get("/api/payments/reconciliation")
    def reconciliation_cases(request: Request):
        return request.app.state.backend.open_reconciliation_cases()

    # -----------------------
    # Broadcast channel
    # -----------------------

    @app.websocket("/ws")
    async def pixel_updates(websocket: WebSocket):
        broadcaster = websocket.app.state.backend.broadcaster
        subscriber = QueueSubscriber(asyncio.get_running_loop())
        # subscribe before accepting so nothing published after the handshake is missed
        broadcaster.subscribe(subscriber)

        async def pump() -> None:
            while True:
                message = await subscriber.next_message()
                await websocket.send_json(message)

        sender = None
        try:
            await websocket.accept()
            sender = asyncio.create_task(pump())
            # viewers never talk back; reading only surfaces the disconnect
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("Viewer disconnected")
        finally:
            broadcaster.unsubscribe(subscriber)
            if sender is not None:
                sender.cancel()

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
