# app.py
# Pandal catalog with proximity search
# - POST /pandals creates a record (id, images, createdAt defaulted server-side)
# - GET  /pandals lists records, or those near ?lng=&lat= within ?radius= meters
# - the 2dsphere index on location is ensured before serving

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from assembler import assemble_pandal
from config import API_PREFIX, CORS_ORIGINS, LOG_LEVEL
from migrations import run_migrations
from models import Pandal, PandalCreate
from pandal_store import Deadline, DeadlineExceeded, PandalStore, StoreError, make_store
from query import BadCoordinates, build_filter

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("pandal.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "store", None) is None:
        app.state.store = make_store()
    await run_migrations(app.state.store)
    yield
    await app.state.store.close()


app = FastAPI(title="Pandal Hopping API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def bad_request(request: Request, exc: RequestValidationError):
    # malformed bodies are a 400 here, not FastAPI's 422
    msg = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'][1:]) or 'body'}: {err['msg']}"
        for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"detail": msg})


def get_store(request: Request) -> PandalStore:
    return request.app.state.store


async def _client_gone(request: Request) -> None:
    while (await request.receive())["type"] != "http.disconnect":
        pass


async def cancel_on_disconnect(request: Request, aw: Awaitable):
    """Await aw, cancelling it if the client disconnects first."""
    work = asyncio.ensure_future(aw)
    watcher = asyncio.ensure_future(_client_gone(request))
    try:
        await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        watcher.cancel()
        if not work.done():
            work.cancel()
            await asyncio.wait({work})
    if work.cancelled():
        raise DeadlineExceeded("context canceled")
    return work.result()


async def _fetch(store: PandalStore, filter: dict, deadline: Deadline) -> list:
    data = []
    cursor = await store.find(filter, deadline)
    async with cursor:
        async for doc in cursor:
            data.append(Pandal.model_validate(doc).to_doc())
    return data


router = APIRouter()


@router.post("/pandals", status_code=201)
async def create_pandal(request: Request, candidate: PandalCreate, store: PandalStore = Depends(get_store)):
    pandal = assemble_pandal(candidate)
    try:
        ack = await cancel_on_disconnect(request, store.insert(pandal.to_doc(), Deadline()))
    except (StoreError, RedisError) as e:
        logger.exception("insert failed for pandal %s", pandal.id)
        raise HTTPException(status_code=500, detail=f"Error while inserting data: {e}")
    return {"message": "Pandal inserted", "data": ack.model_dump()}


@router.get("/pandals")
async def list_pandals(
    request: Request,
    lng: Optional[str] = None,
    lat: Optional[str] = None,
    radius: Optional[str] = None,
    store: PandalStore = Depends(get_store),
):
    try:
        filter = build_filter(lng, lat, radius)
    except BadCoordinates as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        data = await cancel_on_disconnect(request, _fetch(store, filter, Deadline()))
    except (StoreError, RedisError, ValueError) as e:
        logger.exception("listing pandals failed")
        raise HTTPException(status_code=500, detail=str(e))
    # Always a JSON array (never None)
    return {"data": data}


@app.get("/healthz")
async def healthz(store: PandalStore = Depends(get_store)):
    return {"redis_ok": await store.ping()}


app.include_router(router, prefix=API_PREFIX)
